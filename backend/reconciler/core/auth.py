import hmac

from fastapi import HTTPException, Request

from reconciler.core.config import settings


def require_internal_token(request: Request) -> None:
    """Guard operator endpoints with the shared bearer token.

    With no token configured the internal API is closed, not open.
    """
    auth_header = request.headers.get("Authorization")
    if not auth_header:
        raise HTTPException(status_code=401, detail="Authorization header is required")

    if not auth_header.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Invalid authorization header format")

    token = auth_header[7:]
    if not token:
        raise HTTPException(status_code=401, detail="Token is required")

    if not settings.internal_api_token or not hmac.compare_digest(
        token, settings.internal_api_token
    ):
        raise HTTPException(status_code=401, detail="Invalid token")
