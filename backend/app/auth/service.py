"""Session/identity verification for chat connections and REST calls.

A credential is an HS256 JWT issued by the LMS login service. Verification
checks signature and expiry with python-jose, then resolves the embedded
user id against the course directory. Each failure maps to a distinct
``AuthenticationError`` so clients can tell "log in again" (expired) from
"this token is garbage" (invalid) from "your account is gone" (unknown).

Token payloads carry the user id under ``id`` (what the LMS login service
issues); ``userId`` and ``sub`` are accepted for older tokens.
"""
import logging
from typing import Optional

from jose import ExpiredSignatureError, JWTError, jwt

from app.config import get_config
from app.courses.service import CourseDirectory
from app.errors import (
    ExpiredCredential,
    InvalidCredential,
    MissingCredential,
    UnknownUser,
)

from .schemas import Identity

logger = logging.getLogger(__name__)

_USER_ID_CLAIMS = ("id", "userId", "sub")


def extract_bearer(authorization: Optional[str]) -> Optional[str]:
    """Return the token from an ``Authorization: Bearer <token>`` header."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


class IdentityVerifier:
    """Validates bearer credentials and resolves them to an Identity.

    Args:
        secret_key: HMAC secret shared with the login service.
        algorithm: JWT signing algorithm.
        directory: Directory used to resolve user ids.
    """

    def __init__(
        self,
        secret_key: str,
        algorithm: str = "HS256",
        directory: Optional[CourseDirectory] = None,
    ) -> None:
        self._secret_key = secret_key
        self._algorithm = algorithm
        self._directory = directory

    @property
    def directory(self) -> CourseDirectory:
        return self._directory or CourseDirectory.get_instance()

    def verify(self, token: Optional[str]) -> Identity:
        """Verify a credential.

        Raises:
            MissingCredential: No token was supplied.
            ExpiredCredential: The token's ``exp`` has passed.
            InvalidCredential: Bad signature, malformed token, or no user id.
            UnknownUser: The user does not exist or is deactivated.
        """
        if not token or not token.strip():
            raise MissingCredential()

        try:
            payload = jwt.decode(token, self._secret_key, algorithms=[self._algorithm])
        except ExpiredSignatureError:
            raise ExpiredCredential()
        except JWTError as e:
            logger.info("[Auth] Rejected token: %s", e)
            raise InvalidCredential()

        user_id = next(
            (str(payload[claim]) for claim in _USER_ID_CLAIMS if payload.get(claim)),
            None,
        )
        if user_id is None:
            raise InvalidCredential("Authentication error: Token carries no user id")

        user = self.directory.get_user(user_id)
        if user is None or not user.is_active:
            logger.info("[Auth] Token for unknown or inactive user %s", user_id)
            raise UnknownUser()

        return Identity(
            user_id=user.id,
            role=user.role,
            display_name=user.display_name or user.email or user.id,
            email=user.email,
        )


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_verifier: Optional[IdentityVerifier] = None


def get_verifier() -> IdentityVerifier:
    """Return the global verifier, building it from config on first use."""
    global _verifier
    if _verifier is None:
        jwt_secrets = get_config().secrets.jwt
        _verifier = IdentityVerifier(jwt_secrets.secret_key, jwt_secrets.algorithm)
    return _verifier


def set_verifier(verifier: Optional[IdentityVerifier]) -> None:
    """Set (or clear, with None) the global verifier."""
    global _verifier
    _verifier = verifier
