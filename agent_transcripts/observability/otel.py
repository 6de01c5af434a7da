"""OpenTelemetry + Prometheus fallback wiring for transcript conversion.

Every metric is declared once in ``INSTRUMENTS``; the OTLP meter and the
Prometheus fallback both build their instruments from that table, and the
``record_*`` helpers feed whichever backends are live.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, NamedTuple

from agent_transcripts import config
from agent_transcripts.model_identity import split_model_name

logger = logging.getLogger("agent_transcripts.observability")

METER_NAME = "agent_transcripts"
SERVICE_NAMESPACE = "agent-transcripts"


class Instrument(NamedTuple):
    name: str
    kind: str  # "counter" or "histogram"
    unit: str
    description: str
    labels: tuple[str, ...]


INSTRUMENTS: dict[str, Instrument] = {
    "conversions": Instrument(
        "agent_transcripts_conversions_total",
        "counter",
        "1",
        "Count of session conversions by source and result",
        ("source", "result"),
    ),
    "conversion_latency": Instrument(
        "agent_transcripts_conversion_latency_ms",
        "histogram",
        "ms",
        "Latency of single-session conversions",
        ("source", "result"),
    ),
    "parser_failures": Instrument(
        "agent_transcripts_parser_failures_total",
        "counter",
        "1",
        "Count of decoder failures",
        ("parser",),
    ),
    "tool_calls": Instrument(
        "agent_transcripts_tool_calls_total",
        "counter",
        "1",
        "Tool calls observed in converted transcripts",
        ("source", "tool", "status"),
    ),
    "tokens": Instrument(
        "agent_transcripts_tokens_total",
        "counter",
        "1",
        "Token totals by provider and model",
        ("provider", "model", "direction"),
    ),
    "cost": Instrument(
        "agent_transcripts_cost_usd_total",
        "counter",
        "usd",
        "Estimated or recorded cost by provider and model",
        ("provider", "model"),
    ),
}

_initialized = False
_enabled = False
_prom_enabled = False
_tracer: Any | None = None
_providers: list[tuple[str, Any]] = []
_otel_instruments: dict[str, Any] = {}
_prom_instruments: dict[str, Any] = {}


def _normalize_otlp_endpoint(base_endpoint: str, signal_path: str) -> str:
    endpoint = (base_endpoint or "").strip()
    if not endpoint:
        return ""
    if endpoint.endswith(signal_path):
        return endpoint
    if endpoint.endswith("/"):
        endpoint = endpoint[:-1]
    if endpoint.endswith("/v1"):
        return f"{endpoint}{signal_path[3:]}"
    return f"{endpoint}{signal_path}"


def _labels(**values: str) -> dict[str, str]:
    return {key: (value or "").strip() or "unknown" for key, value in values.items()}


def is_enabled() -> bool:
    return _enabled or _prom_enabled


# ── Instrument construction ─────────────────────────────────────────

def build_otel_instruments(meter: Any) -> dict[str, Any]:
    """Create one OTLP instrument per ``INSTRUMENTS`` entry on ``meter``."""
    built: dict[str, Any] = {}
    for key, instrument in INSTRUMENTS.items():
        factory = meter.create_histogram if instrument.kind == "histogram" else meter.create_counter
        built[key] = factory(instrument.name, unit=instrument.unit, description=instrument.description)
    return built


def build_prom_instruments(counter_cls: Any, histogram_cls: Any) -> dict[str, Any]:
    """Create the Prometheus mirror of ``INSTRUMENTS`` from the client's metric classes."""
    built: dict[str, Any] = {}
    for key, instrument in INSTRUMENTS.items():
        metric_cls = histogram_cls if instrument.kind == "histogram" else counter_cls
        built[key] = metric_cls(instrument.name, instrument.description, list(instrument.labels))
    return built


def _start_otel(service_name: str) -> bool:
    try:
        from opentelemetry import metrics, trace
        from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.metrics import MeterProvider
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except ImportError as exc:
        logger.warning("OpenTelemetry dependencies unavailable: %s", exc)
        return False

    global _tracer
    resource = Resource.create({"service.name": service_name, "service.namespace": SERVICE_NAMESPACE})

    traces_endpoint = _normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/traces")
    trace_provider = TracerProvider(resource=resource)
    trace_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=traces_endpoint or None)))
    trace.set_tracer_provider(trace_provider)

    metrics_endpoint = _normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/metrics")
    reader = PeriodicExportingMetricReader(OTLPMetricExporter(endpoint=metrics_endpoint or None))
    meter_provider = MeterProvider(resource=resource, metric_readers=[reader])
    metrics.set_meter_provider(meter_provider)

    _otel_instruments.update(build_otel_instruments(metrics.get_meter(METER_NAME)))
    _tracer = trace.get_tracer(METER_NAME)
    # Meters flush before spans on shutdown.
    _providers[:] = [("meter", meter_provider), ("tracer", trace_provider)]
    return True


def _start_prometheus(port: int) -> bool:
    try:
        from prometheus_client import Counter, Histogram, start_http_server

        start_http_server(port)
        _prom_instruments.update(build_prom_instruments(Counter, Histogram))
    except Exception as exc:  # noqa: BLE001
        logger.warning("Prometheus fallback not started: %s", exc)
        _prom_instruments.clear()
        return False
    logger.info("Prometheus fallback metrics server listening on port %s", port)
    return True


def initialize() -> None:
    """Start exporters once per process according to ``config``."""
    global _initialized, _enabled, _prom_enabled
    if _initialized:
        return
    _initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (AGENT_TRANSCRIPTS_OTEL_ENABLED=false)")
        return

    service_name = config.OTEL_SERVICE_NAME or SERVICE_NAMESPACE
    _enabled = _start_otel(service_name)
    if not _enabled:
        return
    if config.PROM_PORT > 0:
        _prom_enabled = _start_prometheus(config.PROM_PORT)
    logger.info("OpenTelemetry initialized (service=%s endpoint=%s)", service_name, config.OTEL_ENDPOINT)


def shutdown() -> None:
    """Flush and stop the OTLP providers; a failing provider does not block the others."""
    global _enabled
    if not _initialized:
        return
    for label, provider in _providers:
        try:
            provider.shutdown()
        except Exception:  # noqa: BLE001
            logger.debug("%s provider shutdown failed", label.capitalize(), exc_info=True)
    _providers.clear()
    _enabled = False


# ── Recording ───────────────────────────────────────────────────────

def _emit(key: str, amount: float, labels: dict[str, str]) -> None:
    """Feed one measurement to every live backend for instrument ``key``."""
    histogram = INSTRUMENTS[key].kind == "histogram"
    instrument = _otel_instruments.get(key) if _enabled else None
    if instrument is not None:
        if histogram:
            instrument.record(amount, labels)
        else:
            instrument.add(amount, labels)
    prom = _prom_instruments.get(key) if _prom_enabled else None
    if prom is not None:
        child = prom.labels(**labels)
        if histogram:
            child.observe(amount)
        else:
            child.inc(amount)


@contextmanager
def start_span(name: str, attributes: dict[str, Any] | None = None):
    if not _enabled or _tracer is None:
        yield None
        return
    with _tracer.start_as_current_span(name) as span:
        if attributes:
            for key, value in attributes.items():
                if value is not None:
                    span.set_attribute(key, value)
        yield span


def record_conversion(source: str, result: str, duration_ms: float) -> None:
    labels = _labels(source=source, result=result)
    _emit("conversions", 1, labels)
    _emit("conversion_latency", max(0.0, float(duration_ms)), labels)


def record_parser_failure(parser: str) -> None:
    _emit("parser_failures", 1, _labels(parser=parser))


def record_tool_result(source: str, tool: str, status: str, *, count: int = 1) -> None:
    safe_count = max(0, int(count))
    if safe_count:
        _emit("tool_calls", safe_count, _labels(source=source, tool=tool, status=status))


def record_token_cost(
    *,
    model: str | None,
    token_input: int,
    token_output: int,
    cost_usd: float,
) -> None:
    provider, name = split_model_name(model)
    labels = _labels(provider=provider, model=name)
    for direction, tokens in (("input", token_input), ("output", token_output)):
        amount = max(0, int(tokens))
        if amount:
            _emit("tokens", amount, {**labels, "direction": direction})
    if cost_usd > 0:
        _emit("cost", float(cost_usd), labels)
