"""Authentication module (JWT bearer credentials).

Services:
    - IdentityVerifier: validates a credential and resolves the user.
    - get_current_identity: FastAPI dependency for REST endpoints.
"""

from .dependencies import get_current_identity
from .schemas import Identity
from .service import IdentityVerifier, extract_bearer, get_verifier, set_verifier

__all__ = [
    "Identity",
    "IdentityVerifier",
    "extract_bearer",
    "get_current_identity",
    "get_verifier",
    "set_verifier",
]
