"""Logging and tracing setup for the Hoteldesk API."""

from __future__ import annotations

import logging
from logging.config import dictConfig
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from hoteldesk import __version__
from hoteldesk.core.config import Settings

APP_LOGGER = "hoteldesk"

# third-party loggers that drown out ticket activity at INFO
_QUIET_LOGGERS = ("sqlalchemy.engine", "aiosqlite", "uvicorn.access", "websockets")

_provider: TracerProvider | None = None


def _otlp_headers(raw: str | None) -> dict[str, str]:
    """Parse ``key=value,key2=value2`` as used by OTEL_EXPORTER_OTLP_HEADERS."""

    headers: dict[str, str] = {}
    for item in (raw or "").split(","):
        key, sep, value = item.partition("=")
        if sep and key.strip():
            headers[key.strip()] = value.strip()
    return headers


def _logging_config(level: int, fmt: str) -> dict[str, Any]:
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"plain": {"format": fmt}},
        "handlers": {
            "console": {"class": "logging.StreamHandler", "formatter": "plain", "level": level},
        },
        "root": {"handlers": ["console"], "level": level},
        "loggers": {
            APP_LOGGER: {"level": level},
            **{name: {"level": "WARNING"} for name in _QUIET_LOGGERS},
        },
    }


def configure_logging(settings: Settings) -> logging.Logger:
    """Install the console handler and return the ``hoteldesk`` logger.

    Modules log through ``logging.getLogger(__name__)``, so everything under
    the package inherits the configured level.
    """

    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    dictConfig(_logging_config(level, settings.log_format))
    logger = logging.getLogger(APP_LOGGER)
    logger.debug("Logging configured for %s (%s)", settings.app_name, settings.environment)
    return logger


def init_tracer(settings: Settings) -> TracerProvider | None:
    """Install an OTLP tracer provider when tracing is enabled.

    Spans opened before this runs, or when tracing is off, go to the
    OpenTelemetry no-op provider.
    """

    global _provider

    if not settings.otel_enabled or _provider is not None:
        return None

    resource = Resource.create(
        {
            "service.name": settings.otel_service_name,
            "service.version": __version__,
            "deployment.environment": settings.environment,
        }
    )
    exporter = OTLPSpanExporter(
        endpoint=settings.otel_exporter_otlp_endpoint or None,
        headers=_otlp_headers(settings.otel_exporter_otlp_headers) or None,
    )
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    _provider = provider
    return provider


def shutdown_tracer(provider: TracerProvider | None) -> None:
    global _provider

    if provider is None:
        return
    provider.shutdown()
    if provider is _provider:
        _provider = None
