# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Application exceptions and the handlers that turn them into RFC 7807
problem documents.

Domain failures that a client is expected to react to (family already
served by another institution, blocked family without justification,
stock exit larger than the balance) also carry a stable ``code``.
"""

from flask import Flask, request
from werkzeug.exceptions import HTTPException
from pydantic import ValidationError
from typing import Dict, Any, List, Tuple, Optional
from opentelemetry import trace
import logging

from services.hal import HalFormatter
from domain.associations import ALREADY_ASSOCIATED_TAG
from domain.eligibility import JUSTIFICATION_REQUIRED_TAG
from domain.inventory import INSUFFICIENT_STOCK_TAG

tracer = trace.get_tracer(__name__)
logger = logging.getLogger(__name__)

# HTTP status -> (problem type, title)
PROBLEM_TYPES = {
    400: ("bad-request", "Bad Request"),
    401: ("authentication-required", "Authentication Required"),
    403: ("insufficient-permissions", "Insufficient Permissions"),
    404: ("resource-not-found", "Resource Not Found"),
    405: ("method-not-allowed", "Method Not Allowed"),
    409: ("resource-conflict", "Resource Conflict"),
    415: ("unsupported-media-type", "Unsupported Media Type"),
    422: ("business-rule-violation", "Business Rule Violation"),
    500: ("internal-server-error", "Internal Server Error"),
    502: ("bad-gateway", "Bad Gateway"),
    503: ("service-unavailable", "Service Unavailable"),
    504: ("gateway-timeout", "Gateway Timeout"),
}


def _problem_for(status: int) -> Tuple[str, str]:
    default = PROBLEM_TYPES[500] if status >= 500 else PROBLEM_TYPES[400]
    return PROBLEM_TYPES.get(status, default)


class CustomException(Exception):
    """Base class for errors raised on purpose by services and routes."""

    status_code = 500
    error_type = "application-error"
    title = "Application Error"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code


class ValidationException(CustomException):
    status_code = 400
    error_type = "validation-error"
    title = "Validation Error"

    def __init__(self, message: str, validation_errors: list = None):
        super().__init__(message)
        self.validation_errors = validation_errors or []


class AuthenticationException(CustomException):
    status_code = 401
    error_type = "authentication-required"
    title = "Authentication Required"


class AuthorizationException(CustomException):
    status_code = 403
    error_type = "insufficient-permissions"
    title = "Insufficient Permissions"


class NotFoundException(CustomException):
    status_code = 404
    error_type = "resource-not-found"
    title = "Resource Not Found"


class ConflictException(CustomException):
    status_code = 409
    error_type = "resource-conflict"
    title = "Resource Conflict"


class BusinessRuleException(CustomException):
    """Well formed request that breaks a business rule."""

    status_code = 422
    error_type = "business-rule-violation"
    title = "Business Rule Violation"


class FamilyAlreadyAssociatedException(ConflictException):
    """The family is already served by a different institution."""

    def __init__(self, message: str):
        super().__init__(message, ALREADY_ASSOCIATED_TAG)


class JustificationRequiredException(ConflictException):
    """The family is blocked by another institution and no justification was given."""

    def __init__(self, message: str):
        super().__init__(message, JUSTIFICATION_REQUIRED_TAG)


class InsufficientStockException(BusinessRuleException):
    """A stock exit asks for more than is on hand."""

    def __init__(self, message: str):
        super().__init__(message, INSUFFICIENT_STOCK_TAG)


class ServiceUnavailableException(CustomException):
    status_code = 503
    error_type = "service-unavailable"
    title = "Service Unavailable"


def format_pydantic_errors(error: ValidationError) -> List[Dict[str, Any]]:
    """Flatten pydantic errors into field/message/type entries."""
    return [
        {
            "field": ".".join(str(loc) for loc in err["loc"]),
            "message": err["msg"],
            "type": err["type"]
        }
        for err in error.errors()
    ]


def _request_attributes() -> Dict[str, Any]:
    return {"http.method": request.method, "http.path": request.path}


class ErrorHandlerMiddleware:
    """
    Handlers for werkzeug HTTP errors and for anything nobody caught.

    Exception text reaches the client outside production only.
    """

    def __init__(self, app: Flask, base_url: str):
        self.app = app
        self.hal_formatter = HalFormatter(base_url)
        app.register_error_handler(HTTPException, self.handle_http_error)
        app.register_error_handler(Exception, self.handle_unexpected_error)

    @property
    def is_production(self) -> bool:
        return self.app.config.get('ENVIRONMENT') == 'production'

    def handle_http_error(self, error: HTTPException) -> Tuple[Dict[str, Any], int]:
        status = error.code or 500
        error_type, title = _problem_for(status)

        with tracer.start_as_current_span(
            "error_handler.http_error",
            attributes={"error.type": error_type, "error.status": status, **_request_attributes()}
        ):
            detail = str(error.description) if error.description else title
            log = logger.error if status >= 500 else logger.warning
            log(f"{status} {title} on {request.method} {request.path}: {detail}",
                extra={"ip_address": request.remote_addr})

            if status >= 500 and self.is_production:
                detail = "An internal server error occurred"

            body = self.hal_formatter.builder.build_error_response(
                error_type, title, status, detail, request.path
            )
            return body, status

    def handle_unexpected_error(self, error: Exception) -> Tuple[Dict[str, Any], int]:
        with tracer.start_as_current_span(
            "error_handler.unexpected_error",
            attributes={"error.class": error.__class__.__name__, **_request_attributes()}
        ) as span:
            span.record_exception(error)
            logger.error(
                f"Unhandled {error.__class__.__name__} on {request.method} {request.path}",
                exc_info=error
            )

            if self.is_production:
                detail = "An unexpected error occurred"
            else:
                detail = f"{error.__class__.__name__}: {str(error)}"

            return self.hal_formatter.format_server_error(detail, request.path), 500


def register_custom_error_handlers(app: Flask, hal_formatter: HalFormatter):
    """Handlers for ``CustomException`` subclasses and pydantic validation errors."""

    @app.errorhandler(CustomException)
    def handle_custom_exception(error: CustomException):
        with tracer.start_as_current_span(
            "error_handler.custom_exception",
            attributes={
                "error.type": error.error_type,
                "error.status": error.status_code,
                "error.code": error.code or "",
                **_request_attributes()
            }
        ):
            logger.warning(
                f"{error.status_code} {error.error_type} on {request.method} {request.path}: {error.message}",
                extra={"error_code": error.code}
            )
            body = hal_formatter.builder.build_error_response(
                error.error_type,
                error.title,
                error.status_code,
                error.message,
                request.path,
                getattr(error, "validation_errors", None),
                code=error.code
            )
            return body, error.status_code

    @app.errorhandler(ValidationError)
    def handle_pydantic_validation_error(error: ValidationError):
        validation_errors = format_pydantic_errors(error)
        logger.warning(f"Request validation failed on {request.path} ({len(validation_errors)} errors)")
        return hal_formatter.format_validation_error(
            "Request validation failed",
            request.path,
            validation_errors
        ), 400
