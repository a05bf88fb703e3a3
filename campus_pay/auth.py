import logging

import jwt
from fastapi import HTTPException, Request, status

from campus_pay.reconciliation import Caller

logger = logging.getLogger("payment-service.auth")


def decode_token(token: str, secret: str) -> Caller:
    """Verify an HS256 bearer token and return the caller it names."""
    if not secret:
        logger.error("JWT_SECRET is not configured; refusing all bearer tokens")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Authentication is not configured")
    try:
        claims = jwt.decode(token, secret, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Session expired. Please log in again.")
    except jwt.InvalidTokenError as exc:
        logger.info("Rejected bearer token: %s", exc)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authorized, invalid token.")

    if not claims.get("id") or not claims.get("role"):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authorized, invalid token.")
    return Caller(id=str(claims["id"]), role=str(claims["role"]))


def get_caller(request: Request) -> Caller:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authorized, no token or invalid format"
        )
    return decode_token(token.strip(), request.app.state.settings.jwt_secret)


def require_admin(request: Request) -> Caller:
    caller = get_caller(request)
    if caller.role != "admin":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin role required")
    return caller
