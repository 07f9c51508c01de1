"""FastAPI dependency injection for authentication.

Users live in the proposal platform; this service trusts the platform's
JWTs and takes the user id from the ``sub`` claim.
"""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request, status

from src.app.core.security import verify_token


@dataclass(frozen=True)
class AuthenticatedUser:
    """The caller, as identified by a verified access token."""

    id: str
    email: str | None = None


async def get_current_user(request: Request) -> AuthenticatedUser:
    """Extract and validate the current user from the Bearer JWT.

    Raises:
        HTTPException(401): If no valid token is provided.
    """
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    # verify_token rejects tokens without a subject
    payload = verify_token(auth_header[7:], token_type="access")
    return AuthenticatedUser(id=str(payload["sub"]), email=payload.get("email"))


# Alias for cleaner endpoint signatures
require_auth = Depends(get_current_user)
