"""OpenTelemetry instruments for control loop decisions."""

from __future__ import annotations

import logging

from opentelemetry import metrics
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import ConsoleMetricExporter, PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource

from app.core.config import settings

_logger = logging.getLogger(__name__)

_metrics_enabled = False
_provider: MeterProvider | None = None
_decision_counter = None
_rerun_counter = None
_poll_counter = None
_wait_duration_hist = None


def configure_metrics() -> None:
    """Initialise the metrics provider if enabled via settings."""

    global _metrics_enabled, _provider, _decision_counter, _rerun_counter, _poll_counter, _wait_duration_hist

    if not settings.otel_enabled or _metrics_enabled:
        return

    exporter_name = settings.otel_exporter.lower().strip()
    readers = []
    if exporter_name == "prometheus":
        try:
            from opentelemetry.exporter.prometheus import PrometheusMetricReader  # type: ignore
        except ImportError as exc:  # pragma: no cover - optional dependency
            raise RuntimeError(
                "Prometheus exporter selected but opentelemetry-exporter-prometheus is not installed."
            ) from exc
        readers.append(PrometheusMetricReader())
    elif exporter_name == "otlp":
        try:
            from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter  # type: ignore
        except ImportError as exc:  # pragma: no cover - optional dependency
            raise RuntimeError("OTLP exporter selected but opentelemetry-exporter-otlp is not installed.") from exc
        endpoint = settings.otel_otlp_endpoint
        readers.append(PeriodicExportingMetricReader(OTLPMetricExporter(endpoint=endpoint) if endpoint else OTLPMetricExporter()))
    else:
        if exporter_name != "console":
            _logger.warning("Unsupported OTEL exporter '%s'; defaulting to console", exporter_name)
        readers.append(PeriodicExportingMetricReader(ConsoleMetricExporter()))

    _provider = MeterProvider(metric_readers=readers, resource=Resource.create({"service.name": "ci-remediation"}))
    metrics.set_meter_provider(_provider)
    meter = metrics.get_meter("ci-remediation")
    _decision_counter = meter.create_counter(
        name="remediation.decisions",
        unit="1",
        description="Decisions produced, by component and outcome",
    )
    _rerun_counter = meter.create_counter(
        name="remediation.jobs.rerun",
        unit="1",
        description="Jobs handed to GitHub for rerun",
    )
    _poll_counter = meter.create_counter(
        name="remediation.wait.polls",
        unit="1",
        description="Evidence polls issued by the review-and-wait loop",
    )
    _wait_duration_hist = meter.create_histogram(
        name="remediation.wait.duration",
        unit="s",
        description="Wall time spent in review-and-wait loops",
    )
    _metrics_enabled = True


def record_decision(component: str, decision: str) -> None:
    if _metrics_enabled and _decision_counter is not None:
        _decision_counter.add(1, {"component": component, "decision": decision})


def record_reruns(count: int) -> None:
    if _metrics_enabled and _rerun_counter is not None and count:
        _rerun_counter.add(count)


def record_wait(polls: int, seconds: float, status: str) -> None:
    if not _metrics_enabled:
        return
    if _poll_counter is not None and polls:
        _poll_counter.add(polls, {"status": status})
    if _wait_duration_hist is not None:
        _wait_duration_hist.record(max(seconds, 0.0), {"status": status})


def collect_prometheus_metrics() -> tuple[bytes, str]:
    """Render the default Prometheus registry fed by the OTEL reader."""

    try:
        from prometheus_client import CONTENT_TYPE_LATEST, generate_latest  # type: ignore
    except ImportError as exc:  # pragma: no cover - optional dependency
        raise RuntimeError("Prometheus exporter selected but prometheus-client is not installed.") from exc
    return generate_latest(), CONTENT_TYPE_LATEST


def shutdown_metrics() -> None:
    global _metrics_enabled, _provider
    if _metrics_enabled and _provider is not None:
        try:
            _provider.shutdown()
        except Exception:  # pragma: no cover
            _logger.exception("Failed to shutdown metrics provider")
        finally:
            _metrics_enabled = False
            _provider = None
