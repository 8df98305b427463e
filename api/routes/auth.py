# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Authentication endpoints for JWT token management.
"""

from flask import request, jsonify, current_app
from flask_openapi3 import APIBlueprint, Tag
from opentelemetry import trace
import logging
from typing import Any, Dict

from models.base import utcnow
from models.entities import User, UserContext
from models.requests import LoginRequest, RefreshTokenRequest
from models.responses import UserResponse
from domain.authorization import build_user_permissions
from middleware.auth import require_jwt, bearer_token, client_info
from middleware.error_handler import AuthenticationException, NotFoundException
from services.auth import AuthenticationError, TokenValidationError
from services.mongodb import from_document
from utils.request import RequestParser

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

USERS = "users"
INVALID_CREDENTIALS = "Invalid email or password"

auth_tag = Tag(name="Authentication", description="User authentication and token management")
auth_bp = APIBlueprint(
    'auth',
    __name__,
    url_prefix='/api/auth',
    abp_tags=[auth_tag]
)


def _context_for(user: User) -> UserContext:
    """Minimal context for auditing events where no token exists yet."""
    request_info = client_info()
    return UserContext(
        user_id=user.id,
        role=user.role,
        institution_id=user.institution_id,
        email=user.email,
        name=user.name,
        permissions=build_user_permissions(user),
        ip_address=request_info.get("ip_address"),
        user_agent=request_info.get("user_agent"),
        session_id=request_info.get("session_id")
    )


def _log_authentication_event(user_context: UserContext, action: str, success: bool, details: Dict[str, Any] = None):
    current_app.audit_service.log_action(
        user_context,
        "user",
        user_context.user_id,
        action,
        after={"success": success, "details": details or {}}
    )


def _load_user(user_id: str) -> User:
    document = current_app.mongodb_service.find_by_id(USERS, user_id)
    if not document:
        raise NotFoundException(f"User {user_id} not found")
    return User(**from_document(document))


@auth_bp.post('/login')
def login():
    """
    Authenticate with email and password.

    Returns an access token and a refresh token plus the user's profile.
    """
    with tracer.start_as_current_span(
        "auth.login",
        attributes={
            "operation": "login",
            "http.method": request.method,
            "http.url": request.url
        }
    ) as span:
        login_request = RequestParser.parse_model(LoginRequest)
        span.set_attribute("auth.email", login_request.email)

        with tracer.start_as_current_span("db.user.find_by_email") as db_span:
            user_doc = current_app.mongodb_service.find_one(USERS, {"email": login_request.email})
            db_span.set_attributes({
                "db.collection": USERS,
                "db.operation": "find_by_email",
                "db.found": user_doc is not None
            })

        if not user_doc:
            span.set_attribute("auth.result", "user_not_found")
            logger.warning(
                "Login attempt with non-existent email",
                extra={"email": login_request.email, "ip_address": request.remote_addr}
            )
            raise AuthenticationException(INVALID_CREDENTIALS)

        user = User(**from_document(user_doc))
        user_context = _context_for(user)

        if not current_app.auth_service.verify_password(login_request.password, user.password_hash):
            span.set_attribute("auth.result", "invalid_password")
            logger.warning(
                "Login attempt with invalid password",
                extra={"user_id": user.id, "ip_address": request.remote_addr}
            )
            _log_authentication_event(user_context, "login", False, {"error": "invalid_password"})
            raise AuthenticationException(INVALID_CREDENTIALS)

        if not user.is_active():
            span.set_attribute("auth.result", "inactive")
            logger.warning("Login attempt on inactive account", extra={"user_id": user.id})
            _log_authentication_event(user_context, "login", False, {"error": "account_inactive"})
            raise AuthenticationException("User account is inactive")

        try:
            tokens = current_app.auth_service.generate_tokens(user)
        except AuthenticationError as e:
            raise AuthenticationException(str(e))

        now = utcnow()
        current_app.mongodb_service.update_by_id(USERS, user.id, {"lastLogin": now}, user.id)
        user.last_login = now

        _log_authentication_event(user_context, "login", True, {"role": user.role})
        span.set_attributes({"auth.result": "success", "user.id": user.id, "user.role": user.role})
        logger.info(
            "User logged in successfully",
            extra={"user_id": user.id, "role": user.role, "institution_id": user.institution_id}
        )

        response_data = dict(tokens)
        response_data["user"] = UserResponse(**user.model_dump()).to_dict()
        response_data["_links"] = {
            "self": {"href": "/api/auth/login"},
            "refresh": {"href": "/api/auth/refresh", "method": "POST"},
            "logout": {"href": "/api/auth/logout", "method": "POST"},
            "me": {"href": "/api/auth/me"}
        }
        return jsonify(response_data), 200


@auth_bp.post('/refresh')
def refresh_token():
    """Exchange a refresh token for a new access token."""
    with tracer.start_as_current_span("auth.refresh_token") as span:
        refresh_request = RequestParser.parse_model(RefreshTokenRequest)
        auth_middleware = current_app.auth_middleware

        if auth_middleware.is_token_blocked(refresh_request.refresh_token):
            span.set_attribute("auth.result", "token_blocked")
            raise AuthenticationException("Refresh token has been revoked")

        try:
            payload = current_app.auth_service.validate_token(refresh_request.refresh_token, "refresh")
        except TokenValidationError as e:
            span.set_attribute("auth.result", "invalid_token")
            raise AuthenticationException(str(e))

        # Deactivated accounts cannot keep refreshing
        user_doc = current_app.mongodb_service.find_by_id(USERS, payload["sub"])
        if not user_doc or not User(**from_document(user_doc)).is_active():
            span.set_attribute("auth.result", "inactive")
            raise AuthenticationException("User account is inactive")

        try:
            tokens = current_app.auth_service.refresh_access_token(refresh_request.refresh_token)
        except (AuthenticationError, TokenValidationError) as e:
            raise AuthenticationException(str(e))

        span.set_attributes({"auth.result": "success", "user.id": payload["sub"]})
        tokens["_links"] = {
            "self": {"href": "/api/auth/refresh"},
            "logout": {"href": "/api/auth/logout", "method": "POST"}
        }
        return jsonify(tokens), 200


@auth_bp.post('/logout')
@require_jwt
def logout(user_context: UserContext):
    """
    Revoke the current access token and, if given, the refresh token.

    Revoked token IDs are kept in Redis until the token would have expired.
    """
    with tracer.start_as_current_span("auth.logout") as span:
        span.set_attribute("user.id", user_context.user_id)
        auth_service = current_app.auth_service
        redis_service = current_app.redis_service

        tokens = [bearer_token()]
        body = RequestParser.parse_json_body(required=False)
        if body.get("refresh_token"):
            tokens.append(body["refresh_token"])

        revoked = 0
        for token in tokens:
            try:
                token_id = auth_service.extract_token_id(token)
            except TokenValidationError:
                continue
            if redis_service.block_token(token_id, auth_service.token_ttl_seconds(token)):
                revoked += 1

        if revoked < len(tokens):
            logger.warning(
                "Not every token could be revoked",
                extra={"user_id": user_context.user_id, "revoked": revoked, "requested": len(tokens)}
            )

        _log_authentication_event(user_context, "logout", True, {"tokens_revoked": revoked})
        span.set_attribute("auth.tokens_revoked", revoked)
        return jsonify({
            "message": "Logged out successfully",
            "tokens_revoked": revoked,
            "_links": {"login": {"href": "/api/auth/login", "method": "POST"}}
        }), 200


@auth_bp.get('/me')
@require_jwt
def me(user_context: UserContext):
    """Profile of the authenticated user."""
    user = _load_user(user_context.user_id)
    response_data = UserResponse(**user.model_dump()).to_dict()
    response_data["permissions"] = user_context.permissions
    response_data["_links"] = {
        "self": {"href": "/api/auth/me"},
        "logout": {"href": "/api/auth/logout", "method": "POST"}
    }
    if user.institution_id:
        response_data["_links"]["institution"] = {"href": f"/api/institutions/{user.institution_id}"}
    return jsonify(response_data), 200
