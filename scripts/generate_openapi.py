"""Write the control loop OpenAPI schema, or verify a committed copy is current."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

from fastapi.openapi.utils import get_openapi

from app.main import create_app


def render_schema() -> str:
    app = create_app()
    schema = get_openapi(
        title=app.title,
        version=app.version,
        routes=app.routes,
        description=app.description,
    )
    return json.dumps(schema, indent=2, sort_keys=True) + "\n"


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Generate the CI remediation OpenAPI schema")
    parser.add_argument("--output", default="openapi.json", help="Schema path (default: openapi.json)")
    parser.add_argument(
        "--check",
        action="store_true",
        help="Do not write; exit non-zero when the file at --output is missing or stale",
    )
    args = parser.parse_args(argv)

    rendered = render_schema()
    output_path = Path(args.output)
    if args.check:
        current = output_path.read_text(encoding="utf-8") if output_path.exists() else None
        if current != rendered:
            print(f"{output_path} is out of date; rerun scripts/generate_openapi.py", file=sys.stderr)
            return 1
        print(f"{output_path} is up to date")
        return 0

    output_path.write_text(rendered, encoding="utf-8")
    print(f"OpenAPI schema written to {output_path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
