# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Per-request correlation ids, timing and access logging.
"""

import time
import uuid
import logging
from flask import Flask, Response, request, g
from opentelemetry import trace
from opentelemetry.instrumentation.flask import FlaskInstrumentor

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = 'X-Request-ID'
TRACE_ID_HEADER = 'X-Trace-Id'


def _start_request() -> None:
    g.start_time = time.perf_counter()
    g.request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex

    span = trace.get_current_span()
    g.trace_id = format(span.get_span_context().trace_id, "032x") if span.is_recording() else None
    if g.trace_id:
        span.set_attribute("http.request_id", g.request_id)


def _finish_request(response: Response) -> Response:
    elapsed_ms = round((time.perf_counter() - g.get('start_time', time.perf_counter())) * 1000, 2)

    span = trace.get_current_span()
    if span.is_recording():
        span.set_attribute("http.duration_ms", elapsed_ms)

    logger.info(
        f"{request.method} {request.path} {response.status_code} {elapsed_ms}ms",
        extra={"request_id": g.get('request_id'), "remote_addr": request.remote_addr}
    )

    response.headers[REQUEST_ID_HEADER] = g.get('request_id') or ''
    if g.get('trace_id'):
        response.headers[TRACE_ID_HEADER] = g.trace_id
    return response


def add_observability_middleware(app: Flask, instrument: bool = True) -> None:
    """
    Echo or assign ``X-Request-ID``, expose ``X-Trace-Id`` and log each request.

    Args:
        app: Flask application
        instrument: Also create a server span per request with ``FlaskInstrumentor``
    """
    if instrument:
        FlaskInstrumentor().instrument_app(app)

    app.before_request(_start_request)
    app.after_request(_finish_request)
