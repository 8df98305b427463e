# SPDX-License-Identifier: Apache-2.0

"""
Account credentials and JWT sessions.

Passwords are stored as bcrypt hashes. Sessions are a pair of RS256 tokens:
a short-lived access token carrying the role, the institution and the
permissions the role grants, and a refresh token that only identifies the
account. Every token has a ``jti`` so logout can block it in Redis.
"""

import os
import uuid
import jwt
import bcrypt
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, List, Tuple
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from opentelemetry import trace
import logging

from models.entities import User
from domain.authorization import build_user_permissions, permissions_for_role

tracer = trace.get_tracer(__name__)
logger = logging.getLogger(__name__)

ALGORITHM = "RS256"
ACCESS = "access"
REFRESH = "refresh"
BCRYPT_ROUNDS = 12


class AuthenticationError(Exception):
    """A token could not be issued."""
    pass


class TokenValidationError(Exception):
    """A presented token is expired, forged, malformed or of the wrong type."""
    pass


def generate_key_pair() -> Tuple[str, str]:
    """New RSA key pair as (private PEM, public PEM)."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption()
    )
    public_pem = key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo
    )
    return private_pem.decode('utf-8'), public_pem.decode('utf-8')


def _unverified_claims(token: str) -> Dict[str, Any]:
    try:
        return jwt.decode(token, options={"verify_signature": False, "verify_exp": False})
    except jwt.InvalidTokenError as e:
        raise TokenValidationError(f"Malformed token: {str(e)}")


class AuthService:
    """
    Issues, checks and renews tokens and hashes passwords.

    Access tokens are self-contained: request handling builds the user
    context from the claims without reading the users collection.
    """

    def __init__(
        self,
        private_key: Optional[str] = None,
        public_key: Optional[str] = None,
        access_token_expire_minutes: int = 15,
        refresh_token_expire_days: int = 7
    ):
        """
        Args:
            private_key: PEM key that signs tokens; ``JWT_PRIVATE_KEY`` when omitted
            public_key: PEM key that verifies tokens; ``JWT_PUBLIC_KEY`` when omitted
            access_token_expire_minutes: Access token lifetime
            refresh_token_expire_days: Refresh token lifetime
        """
        private_key = private_key or os.getenv("JWT_PRIVATE_KEY")
        public_key = public_key or os.getenv("JWT_PUBLIC_KEY")

        if not (private_key and public_key):
            # Both halves must come from the same pair
            logger.warning("JWT_PRIVATE_KEY/JWT_PUBLIC_KEY not set, signing with an ephemeral key pair")
            private_key, public_key = generate_key_pair()

        self.private_key = private_key
        self.public_key = public_key
        self.access_lifetime = timedelta(minutes=access_token_expire_minutes)
        self.refresh_lifetime = timedelta(days=refresh_token_expire_days)

    # Passwords

    def hash_password(self, password: str) -> str:
        with tracer.start_as_current_span("auth.hash_password"):
            return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode('utf-8')

    def verify_password(self, password: str, hashed_password: str) -> bool:
        """False on a mismatch and on a stored hash bcrypt cannot parse."""
        with tracer.start_as_current_span("auth.verify_password") as span:
            try:
                matches = bcrypt.checkpw(password.encode('utf-8'), hashed_password.encode('utf-8'))
            except ValueError as e:
                span.set_attribute("auth.password_check", "unreadable_hash")
                logger.error(f"Stored password hash is unreadable: {str(e)}")
                return False

            span.set_attribute("auth.password_check", "match" if matches else "mismatch")
            return matches

    # Tokens

    def _claims(
        self,
        subject: str,
        role: Optional[str],
        institution_id: Optional[str],
        token_type: str,
        issued_at: datetime
    ) -> Dict[str, Any]:
        lifetime = self.access_lifetime if token_type == ACCESS else self.refresh_lifetime
        return {
            "sub": subject,
            "role": role,
            "institution_id": institution_id,
            "iat": issued_at,
            "exp": issued_at + lifetime,
            "jti": uuid.uuid4().hex,
            "type": token_type
        }

    def _access_claims(
        self,
        subject: str,
        role: Optional[str],
        institution_id: Optional[str],
        permissions: List[str],
        issued_at: datetime
    ) -> Dict[str, Any]:
        claims = self._claims(subject, role, institution_id, ACCESS, issued_at)
        claims["permissions"] = permissions
        return claims

    def _sign(self, claims: Dict[str, Any]) -> str:
        try:
            return jwt.encode(claims, self.private_key, algorithm=ALGORITHM)
        except (jwt.PyJWTError, ValueError, TypeError) as e:
            logger.error(f"Token signing failed: {str(e)}", extra={"user_id": claims.get("sub")})
            raise AuthenticationError(f"Could not sign {claims.get('type')} token: {str(e)}")

    def generate_tokens(self, user: User) -> Dict[str, Any]:
        """
        Access and refresh tokens for a user who just signed in.

        Returns:
            ``access_token``, ``refresh_token``, ``token_type`` and the access
            lifetime in ``expires_in`` seconds
        """
        with tracer.start_as_current_span(
            "auth.generate_tokens",
            attributes={"user.id": user.id, "user.role": user.role}
        ):
            now = datetime.now(timezone.utc)
            access = self._access_claims(user.id, user.role, user.institution_id, build_user_permissions(user), now)
            access.update({"email": user.email, "name": user.name})
            refresh = self._claims(user.id, user.role, user.institution_id, REFRESH, now)

            tokens = {
                "token_type": "Bearer",
                "expires_in": int(self.access_lifetime.total_seconds()),
                "access_expires_at": access["exp"].isoformat(),
                "refresh_expires_at": refresh["exp"].isoformat()
            }
            tokens["access_token"] = self._sign(access)
            tokens["refresh_token"] = self._sign(refresh)
            logger.info(
                "Session tokens issued",
                extra={"user_id": user.id, "role": user.role, "institution_id": user.institution_id}
            )
            return tokens

    def validate_token(self, token: str, token_type: str = ACCESS) -> Dict[str, Any]:
        """
        Verify signature, expiry and type and return the claims.

        Raises:
            TokenValidationError: The token fails any of the checks
        """
        with tracer.start_as_current_span("auth.validate_token", attributes={"auth.token_type": token_type}) as span:
            try:
                claims = jwt.decode(token, self.public_key, algorithms=[ALGORITHM])
            except jwt.ExpiredSignatureError:
                span.set_attribute("auth.token_check", "expired")
                raise TokenValidationError("Token has expired")
            except jwt.InvalidTokenError as e:
                span.set_attribute("auth.token_check", "invalid")
                logger.warning(f"Rejected token: {str(e)}")
                raise TokenValidationError(f"Invalid token: {str(e)}")

            if claims.get("type") != token_type:
                span.set_attribute("auth.token_check", "wrong_type")
                raise TokenValidationError(f"Wrong token type {claims.get('type')!r}. Expected {token_type}")

            span.set_attributes({"auth.token_check": "valid", "user.id": claims.get("sub")})
            return claims

    def refresh_access_token(self, refresh_token: str) -> Dict[str, Any]:
        """
        New access token from a valid refresh token.

        Permissions are derived again from the role so a change to the role's
        grants reaches existing sessions at their next refresh.
        """
        with tracer.start_as_current_span("auth.refresh_access_token"):
            session = self.validate_token(refresh_token, REFRESH)
            role = session.get("role")
            access = self._access_claims(
                session["sub"], role, session.get("institution_id"),
                permissions_for_role(role or ""), datetime.now(timezone.utc)
            )
            expires_at = access["exp"].isoformat()
            token = self._sign(access)
            logger.info("Access token renewed", extra={"user_id": session["sub"]})
            return {
                "access_token": token,
                "token_type": "Bearer",
                "expires_in": int(self.access_lifetime.total_seconds()),
                "expires_at": expires_at
            }

    # Blocklist support

    def extract_token_id(self, token: str) -> str:
        """
        Blocklist key for a token, read without verifying it.

        Raises:
            TokenValidationError: The token cannot be decoded at all
        """
        claims = _unverified_claims(token)
        return claims.get("jti") or f"{claims.get('sub')}:{claims.get('iat')}:{claims.get('type')}"

    def token_ttl_seconds(self, token: str) -> int:
        """Seconds until the token expires, 0 when it already has or cannot be read."""
        try:
            expires_at = _unverified_claims(token).get("exp")
        except TokenValidationError:
            return 0
        if not expires_at:
            return 0
        return max(int(expires_at - datetime.now(timezone.utc).timestamp()), 0)
