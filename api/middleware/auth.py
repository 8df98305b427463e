# SPDX-License-Identifier: Apache-2.0

"""
Request authentication and the permission and institution-scope checks
routes apply on top of it.

Views are wrapped as::

    @require_jwt
    @require_permission('delivery:create')
    def create_delivery(user_context, ...): ...
"""

from functools import wraps
from flask import request, g, current_app
from typing import Optional, Dict, Any, Callable
from opentelemetry import trace
import logging

from models.entities import UserContext
from services.auth import TokenValidationError
from domain.authorization import check_permission, check_institution_access, resolve_institution_id
from middleware.error_handler import (
    AuthenticationException,
    AuthorizationException,
    ValidationException
)

tracer = trace.get_tracer(__name__)
logger = logging.getLogger(__name__)

BEARER_PREFIX = "bearer "


def bearer_token() -> Optional[str]:
    """Token from the Authorization header, with or without the Bearer scheme."""
    header = request.headers.get('Authorization', '').strip()
    if header.lower().startswith(BEARER_PREFIX):
        header = header[len(BEARER_PREFIX):].strip()
    return header or None


def client_info() -> Dict[str, Any]:
    """Caller details recorded on the user context and in the audit trail."""
    forwarded = request.headers.get('X-Forwarded-For', '')
    return {
        "ip_address": forwarded.split(',')[0].strip() or request.remote_addr,
        "user_agent": request.headers.get('User-Agent', ''),
        "session_id": request.headers.get('X-Session-ID')
    }


def context_from_claims(claims: Dict[str, Any], info: Dict[str, Any]) -> UserContext:
    return UserContext(
        user_id=claims["sub"],
        role=claims["role"],
        institution_id=claims.get("institution_id"),
        email=claims.get("email"),
        name=claims.get("name"),
        permissions=claims.get("permissions", []),
        token_payload=claims,
        **info
    )


class AuthMiddleware:
    """Turns the bearer token of the current request into a ``UserContext``."""

    def __init__(self, auth_service, redis_service):
        self.auth_service = auth_service
        self.redis_service = redis_service

    def is_token_blocked(self, token: str) -> bool:
        """Whether logout revoked the token. Tokens that cannot be decoded count as revoked."""
        try:
            token_id = self.auth_service.extract_token_id(token)
        except TokenValidationError as e:
            logger.warning(f"Undecodable token treated as revoked: {str(e)}")
            return True
        return self.redis_service.is_token_blocked(token_id)

    def authenticate(self) -> UserContext:
        """
        Validate the request's access token and store the caller on ``g``.

        Raises:
            AuthenticationException: Missing, revoked or invalid token
        """
        with tracer.start_as_current_span("auth.middleware.authenticate") as span:
            token = bearer_token()
            if token is None:
                outcome, failure = "missing_token", AuthenticationException("Missing authorization token")
            elif self.is_token_blocked(token):
                outcome, failure = "token_blocked", AuthenticationException("Token has been revoked")
            else:
                try:
                    claims = self.auth_service.validate_token(token, "access")
                    outcome, failure = "success", None
                except TokenValidationError as e:
                    outcome, failure = "invalid_token", AuthenticationException(str(e))

            span.set_attribute("auth.result", outcome)
            if failure:
                logger.warning(f"Authentication failed on {request.path}: {failure.message}")
                raise failure

            g.user_context = context_from_claims(claims, client_info())
            span.set_attributes({
                "user.id": g.user_context.user_id,
                "user.role": g.user_context.role,
                "institution.id": g.user_context.institution_id or ""
            })
            return g.user_context


def require_jwt(f: Callable) -> Callable:
    """Authenticate the request and pass the ``UserContext`` as the view's first argument."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        user_context = current_app.auth_middleware.authenticate()
        return f(user_context, *args, **kwargs)
    return decorated_function


def require_permission(permission: str) -> Callable:
    """Reject callers whose role lacks ``permission``. Stack it under ``require_jwt``."""
    def decorator(f: Callable) -> Callable:
        @wraps(f)
        def decorated_function(user_context: UserContext, *args, **kwargs):
            with tracer.start_as_current_span(
                "auth.middleware.check_permission",
                attributes={"auth.required_permission": permission, "user.id": user_context.user_id}
            ) as span:
                result = check_permission(user_context, permission)
                span.set_attribute("auth.permission_result", "granted" if result.allowed else "denied")
                if not result.allowed:
                    logger.warning(
                        f"User {user_context.user_id} ({user_context.role}) lacks {permission}"
                    )
                    raise AuthorizationException(result.reason)
            return f(user_context, *args, **kwargs)

        return decorated_function
    return decorator


def require_institution_scope(user_context: UserContext, requested: Optional[str]) -> str:
    """
    Institution an operation acts for.

    Institution users default to, and are limited to, their own institution.
    Admins must name one.

    Raises:
        ValidationException: No institution could be determined
        AuthorizationException: The caller may not act for the institution
    """
    institution_id = resolve_institution_id(user_context, requested)
    if not institution_id:
        raise ValidationException("institution_id is required")

    result = check_institution_access(user_context, institution_id)
    if not result.allowed:
        logger.warning(
            f"User {user_context.user_id} of institution {user_context.institution_id} "
            f"denied access to institution {institution_id}"
        )
        raise AuthorizationException(result.reason)

    return institution_id
