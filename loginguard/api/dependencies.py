"""FastAPI request helpers: client address and the admin bearer token."""
import secrets

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

_security = HTTPBearer(auto_error=False)


def resolve_client_ip(request: Request, trust_forwarded: bool = False) -> str:
    """Resolve the client address of a request.

    Forwarding headers are client-controlled, so they are only read when
    ``trust_forwarded`` is set (the app runs behind a proxy that rewrites
    them). Then the order is: first hop of ``X-Forwarded-For``, then
    ``X-Real-IP``, then the socket peer. Returns "unknown" when nothing is
    available.
    """
    if trust_forwarded:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
        real_ip = (request.headers.get("x-real-ip") or "").strip()
        if real_ip:
            return real_ip
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def client_ip(request: Request) -> str:
    """Dependency: the client address under the app's forwarding policy."""
    settings = getattr(request.app.state, "settings", None)
    trust = bool(settings and settings.trust_forwarded_headers)
    return resolve_client_ip(request, trust_forwarded=trust)


def require_admin(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(_security),
) -> None:
    """Allow the call only with the configured admin token.

    401 without a bearer token, 403 with a wrong one or when no token is
    configured (the protected routes are then disabled).
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    settings = getattr(request.app.state, "settings", None)
    expected = settings.admin_token if settings else None
    if expected is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin API disabled.")

    if not secrets.compare_digest(
        credentials.credentials.encode("utf-8"),
        expected.get_secret_value().encode("utf-8"),
    ):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied.")
