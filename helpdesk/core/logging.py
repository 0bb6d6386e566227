"""Logging and tracing setup for the helpdesk API."""

from __future__ import annotations

import logging
from logging.config import dictConfig
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from helpdesk.core.config import Settings

# Client libraries log every request at INFO; keep them quiet unless overridden.
_LIBRARY_LEVELS = {"httpx": "WARNING", "httpcore": "WARNING", "apscheduler": "WARNING"}

_tracer_provider: TracerProvider | None = None


def parse_pairs(raw: str | None) -> dict[str, str]:
    """Split ``"a=1,b=2"`` into a mapping, skipping malformed items."""

    pairs: dict[str, str] = {}
    for item in (raw or "").split(","):
        key, sep, value = item.partition("=")
        if sep and key.strip():
            pairs[key.strip()] = value.strip()
    return pairs


def _level_name(value: str, default: str = "INFO") -> str:
    name = value.strip().upper()
    return name if isinstance(logging.getLevelName(name), int) else default


def build_logging_config(settings: Settings) -> dict[str, Any]:
    root_level = _level_name(settings.log_level)
    loggers = {name: {"level": level} for name, level in _LIBRARY_LEVELS.items()}
    for name, level in parse_pairs(settings.log_levels).items():
        loggers[name] = {"level": _level_name(level, root_level)}

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"default": {"format": settings.log_format}},
        "handlers": {
            "default": {"class": "logging.StreamHandler", "formatter": "default"},
        },
        "loggers": loggers,
        "root": {"handlers": ["default"], "level": root_level},
    }


def configure_logging(settings: Settings) -> logging.Logger:
    dictConfig(build_logging_config(settings))
    logger = logging.getLogger("helpdesk")
    logger.info("Logging configured for %s (%s)", settings.app_name, settings.environment)
    return logger


def init_tracer(settings: Settings) -> TracerProvider | None:
    """Install an OTLP-exporting tracer provider when tracing is enabled.

    Spans opened through ``trace.get_tracer`` before this runs (or when it is
    disabled) go to the no-op provider, so instrumented code needs no guard.
    """

    global _tracer_provider

    if _tracer_provider is not None or not settings.otel_enabled:
        return None

    resource = Resource(
        attributes={
            "service.name": settings.otel_service_name,
            "deployment.environment": settings.environment,
        }
    )
    provider = TracerProvider(resource=resource)

    exporter_kwargs: dict[str, object] = {}
    if settings.otel_exporter_otlp_endpoint:
        exporter_kwargs["endpoint"] = settings.otel_exporter_otlp_endpoint
    headers = parse_pairs(settings.otel_exporter_otlp_headers)
    if headers:
        exporter_kwargs["headers"] = headers
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(**exporter_kwargs)))

    trace.set_tracer_provider(provider)
    _tracer_provider = provider
    return provider


def shutdown_tracer(provider: TracerProvider | None) -> None:
    global _tracer_provider

    if provider is None:
        return
    provider.shutdown()
    if provider is _tracer_provider:
        _tracer_provider = None
