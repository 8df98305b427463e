# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
CORS handling for the municipal dashboard frontend.

``CORS_ORIGINS`` is a comma separated list of origins. Entries may use
shell-style wildcards (``https://preview-*``) to admit preview deployments.
"""

from fnmatch import fnmatchcase
from flask import Flask, Response, request, make_response
from typing import List, Optional
import logging

logger = logging.getLogger(__name__)

DEVELOPMENT_ORIGINS = [
    'http://localhost:3000',
    'http://localhost:5173',
    'http://127.0.0.1:3000',
    'http://127.0.0.1:5173'
]


def parse_origins(value: Optional[str]) -> List[str]:
    """Comma separated origins, blanks dropped."""
    if not value:
        return []
    return [origin.strip().rstrip('/') for origin in value.split(',') if origin.strip()]


class CORSMiddleware:
    """Answers preflight requests and adds CORS headers for admitted origins."""

    ALLOWED_METHODS = ('GET', 'POST', 'PUT', 'DELETE', 'PATCH', 'OPTIONS')
    ALLOWED_HEADERS = ('Accept', 'Authorization', 'Content-Type', 'X-Requested-With', 'X-Session-ID', 'X-Request-ID')
    # CSV exports are downloaded by the browser, which needs the file name
    EXPOSED_HEADERS = ('Content-Disposition', 'Content-Length', 'X-Request-ID', 'X-Trace-Id')

    def __init__(self, app: Flask, allowed_origins: List[str], allow_credentials: bool = True, max_age: int = 86400):
        self.allowed_origins = allowed_origins
        self.allow_credentials = allow_credentials
        self.max_age = max_age

        app.before_request(self._answer_preflight)
        app.after_request(self._decorate_response)

    def is_origin_allowed(self, origin: Optional[str]) -> bool:
        return bool(origin) and any(fnmatchcase(origin, pattern) for pattern in self.allowed_origins)

    def _cors_headers(self, origin: str) -> dict:
        headers = {
            'Access-Control-Allow-Origin': origin,
            'Vary': 'Origin',
            'Access-Control-Allow-Methods': ', '.join(self.ALLOWED_METHODS),
            'Access-Control-Allow-Headers': ', '.join(self.ALLOWED_HEADERS),
            'Access-Control-Expose-Headers': ', '.join(self.EXPOSED_HEADERS),
            'Access-Control-Max-Age': str(self.max_age)
        }
        if self.allow_credentials:
            headers['Access-Control-Allow-Credentials'] = 'true'
        return headers

    def _answer_preflight(self) -> Optional[Response]:
        if request.method != 'OPTIONS':
            return None

        origin = request.headers.get('Origin')
        if not self.is_origin_allowed(origin):
            logger.warning(f"CORS preflight from {origin} rejected")
            return make_response('', 403)
        return make_response('', 200)

    def _decorate_response(self, response: Response) -> Response:
        origin = request.headers.get('Origin')
        if self.is_origin_allowed(origin):
            response.headers.update(self._cors_headers(origin))
        elif origin:
            logger.debug(f"No CORS headers for origin {origin}")
        return response


def configure_cors(app: Flask, origins: Optional[str] = None, environment: str = 'development') -> CORSMiddleware:
    """Install CORS handling. Development also admits the usual local frontend ports."""
    allowed_origins = parse_origins(origins)
    if environment == 'development':
        allowed_origins += [origin for origin in DEVELOPMENT_ORIGINS if origin not in allowed_origins]

    logger.info(f"CORS origins: {', '.join(allowed_origins) or 'none'}")
    return CORSMiddleware(app, allowed_origins)
