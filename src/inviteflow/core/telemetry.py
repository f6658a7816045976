"""OpenTelemetry initialization and span helpers for poll passes."""

from __future__ import annotations

import logging
import os

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider

logger = logging.getLogger(__name__)

_TRACER_NAME = "inviteflow"

# Guard flag: True once the global TracerProvider has been installed.
_tracer_provider_installed: bool = False


def init_telemetry(service_name: str = _TRACER_NAME) -> trace.Tracer:
    """
    Initialize OpenTelemetry tracing for the poller process.

    When OTEL_EXPORTER_OTLP_ENDPOINT is set, configures a real TracerProvider
    with an OTLP gRPC exporter on the first call. Subsequent calls reuse the
    existing provider.

    Args:
        service_name: Service name reported on exported spans.

    Returns:
        A Tracer instance (real or no-op depending on config)
    """
    global _tracer_provider_installed

    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op tracer")
        return trace.get_tracer(service_name)

    if _tracer_provider_installed:
        logger.debug(
            "TracerProvider already initialized; reusing existing provider for service=%s",
            service_name,
        )
        return trace.get_tracer(service_name)

    # Import exporter only when needed (optional "otlp" extra)
    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    resource = Resource.create({"service.name": service_name})
    provider = TracerProvider(resource=resource)

    exporter = OTLPSpanExporter(endpoint=endpoint)
    provider.add_span_processor(BatchSpanProcessor(exporter))

    trace.set_tracer_provider(provider)
    _tracer_provider_installed = True
    logger.info("Telemetry initialized: endpoint=%s", endpoint)

    return trace.get_tracer(service_name)


def get_tracer(name: str = _TRACER_NAME) -> trace.Tracer:
    """Get a tracer from the current provider (useful for modules)."""
    return trace.get_tracer(name)


def tag_user_span(span: trace.Span, user_id: str, *, dry_run: bool = False) -> None:
    """Set per-user attribution attributes on a pass span."""
    span.set_attribute("inviteflow.user_id", user_id)
    span.set_attribute("inviteflow.dry_run", dry_run)
