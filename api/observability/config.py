# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Tracing and logging setup, run once before the Flask app is created.

Spans go to the OTLP collector named by ``OTEL_EXPORTER_OTLP_ENDPOINT``,
or to stdout in development when no collector is configured. Log records
carry the id of the active trace so they can be matched to spans.
"""

import os
import logging
from typing import Optional
from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter

SERVICE_NAME = 'cesta-basica-api'

# Share of traces kept; unlisted environments keep all of them
SAMPLING_RATIOS = {
    'production': 0.1,
    'staging': 0.5
}

LOG_LEVELS = {
    'production': logging.WARNING,
    'staging': logging.INFO,
    'development': logging.DEBUG,
    'test': logging.WARNING
}

LOG_FORMAT = '%(asctime)s %(levelname)s %(name)s [trace=%(trace_id)s] %(message)s'


class TraceContextFilter(logging.Filter):
    """Adds ``trace_id`` to every record, ``-`` outside a recorded span."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = trace.get_current_span().get_span_context()
        record.trace_id = format(context.trace_id, "032x") if context.is_valid else "-"
        return True


def configure_logging(environment: str) -> None:
    handler = logging.StreamHandler()
    handler.addFilter(TraceContextFilter())
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    logging.basicConfig(level=LOG_LEVELS.get(environment, logging.INFO), handlers=[handler])

    # Driver chatter stays out of application logs
    logging.getLogger('pymongo').setLevel(logging.WARNING if environment == 'production' else logging.INFO)
    logging.getLogger('urllib3').setLevel(logging.WARNING)


def _span_exporter(environment: str) -> Optional[SpanExporter]:
    endpoint = os.getenv('OTEL_EXPORTER_OTLP_ENDPOINT')
    if endpoint:
        api_key = os.getenv('OTEL_API_KEY')
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else None
        return OTLPSpanExporter(endpoint=endpoint, headers=headers)
    if environment == 'development':
        return ConsoleSpanExporter()
    return None


def setup_observability() -> bool:
    """
    Configure logging and, unless disabled, install the tracer provider.

    Returns:
        True when tracing is active and Flask should be instrumented
    """
    environment = os.getenv('ENVIRONMENT', 'development')
    configure_logging(environment)

    if os.getenv('OTEL_ENABLED', 'true').lower() != 'true' or environment == 'test':
        return False

    provider = TracerProvider(
        sampler=TraceIdRatioBased(SAMPLING_RATIOS.get(environment, 1.0)),
        resource=Resource.create({
            "service.name": SERVICE_NAME,
            "service.version": os.getenv('SERVICE_VERSION', '1.0.0'),
            "deployment.environment": environment
        })
    )

    exporter = _span_exporter(environment)
    if exporter is not None:
        provider.add_span_processor(BatchSpanProcessor(exporter, max_export_batch_size=512))

    trace.set_tracer_provider(provider)
    logging.getLogger(__name__).info(
        f"Tracing enabled for {environment} with {type(exporter).__name__ if exporter else 'no exporter'}"
    )
    return True
