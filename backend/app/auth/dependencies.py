"""FastAPI dependencies for bearer-authenticated REST endpoints."""
from typing import Optional

from fastapi import Header

from .schemas import Identity
from .service import extract_bearer, get_verifier


async def get_current_identity(
    authorization: Optional[str] = Header(None),
) -> Identity:
    """Resolve the caller from the ``Authorization`` header.

    Authentication errors propagate to the app-level ChatError handler,
    which answers 401 with the specific reason.
    """
    return get_verifier().verify(extract_bearer(authorization))
