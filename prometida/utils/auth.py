"""Session token helpers."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

import jwt

from ..errors import AuthError


def read_session_claims(token: str) -> Dict[str, Any]:
    """Return the claims of a Supabase access token without verifying it.

    The signature belongs to the backend and is checked there; the client only
    needs the subject and expiry to decide whether a stored session is still
    worth resuming.

    Raises
    ------
    AuthError
        If the token is missing or cannot be decoded.
    """

    if not token:
        raise AuthError("Falta el token de sesión.")

    try:
        return jwt.decode(
            token,
            options={"verify_signature": False, "verify_exp": False},
            algorithms=["HS256", "RS256", "ES256"],
        )
    except jwt.InvalidTokenError as exc:
        raise AuthError("El token de sesión no es válido.") from exc


def token_expiry(token: str) -> Optional[datetime]:
    exp = read_session_claims(token).get("exp")
    if isinstance(exp, (int, float)):
        return datetime.fromtimestamp(exp, tz=timezone.utc)
    return None


def ensure_session_fresh(token: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Return the token claims, raising ``AuthError`` once the token has expired."""

    claims = read_session_claims(token)
    exp = claims.get("exp")
    if isinstance(exp, (int, float)):
        expiry = datetime.fromtimestamp(exp, tz=timezone.utc)
        if expiry <= (now or datetime.now(timezone.utc)):
            raise AuthError("Tu sesión ha caducado. Vuelve a iniciar sesión.")
    return claims
