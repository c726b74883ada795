"""Login guard API routes -- failures, blocks, resets, cleanup."""
from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from loginguard.api.dependencies import client_ip, require_admin
from loginguard.application.login_protection import LoginProtection
from loginguard.domain.errors import InvalidIdentifier, InvalidType, StoreUnavailable


# Routes with require_admin need "Authorization: Bearer <LOGINGUARD_ADMIN_TOKEN>".
router = APIRouter(prefix="/api/guard", tags=["guard"])

_ledger = None
_protection = None


def init_guard_routes(ledger, protection: LoginProtection | None = None):
    global _ledger, _protection
    _ledger = ledger
    _protection = protection or LoginProtection(ledger)


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class IdentifierRequest(BaseModel):
    identifier: str = Field(..., min_length=1, max_length=254)
    type: str = Field(..., min_length=1, max_length=10)


class CleanupRequest(BaseModel):
    retention_days: int | None = Field(None, ge=0, le=3650)


class LoginAttemptRequest(BaseModel):
    email: str | None = Field(None, max_length=254)


class LoginSuccessRequest(LoginAttemptRequest):
    # Address of the user who logged in; defaults to the caller.
    ip: str | None = Field(None, max_length=64)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _call(operation, *args, **kwargs):
    """Run a ledger call, mapping its errors onto HTTP statuses."""
    try:
        return operation(*args, **kwargs)
    except (InvalidIdentifier, InvalidType) as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    except StoreUnavailable:
        raise HTTPException(
            status_code=503,
            detail="Attempt store unavailable.",
            headers={"Retry-After": "30"},
        )


def _decision_response(decision) -> JSONResponse:
    if decision.allowed:
        return JSONResponse(status_code=200, content=decision.to_dict())
    status = 503 if decision.degraded else 429
    return JSONResponse(
        status_code=status,
        content=decision.to_dict(),
        headers={"Retry-After": str(max(1, decision.retry_after_seconds))},
    )


# ---------------------------------------------------------------------------
# Ledger endpoints
# ---------------------------------------------------------------------------

@router.post("/failures")
def api_record_failure(req: IdentifierRequest):
    """Count one failed authentication for an identifier."""
    result = _call(_ledger.record_failure, req.identifier, req.type)
    return result.to_dict()


@router.get("/blocks/{identifier_type}/{identifier}")
def api_is_blocked(identifier_type: str, identifier: str):
    """Report whether an identifier is blocked right now."""
    info = _call(_ledger.is_blocked, identifier, identifier_type)
    if info is None:
        return {"blocked": False}
    return info.to_dict()


@router.get("/blocks", dependencies=[Depends(require_admin)])
def api_list_blocks():
    """Every identifier with a block still running."""
    records = _call(_ledger.list_blocked)
    return {"blocks": [r.to_dict() for r in records], "total": len(records)}


@router.post("/reset", dependencies=[Depends(require_admin)])
def api_reset(req: IdentifierRequest):
    """Clear consecutive failures and any block after a successful login."""
    changed = _call(_ledger.reset_attempts, req.identifier, req.type)
    return {"reset": changed}


@router.post("/cleanup", dependencies=[Depends(require_admin)])
def api_cleanup(req: CleanupRequest | None = None):
    """Delete unblocked records older than the retention window."""
    days = req.retention_days if req else None
    deleted = _call(_ledger.cleanup, retention_days=days)
    return {"deleted": deleted}


@router.delete("/attempts", dependencies=[Depends(require_admin)])
def api_purge(identifier_type: str | None = Query(None, alias="type")):
    """Delete every record, optionally for one identifier type only."""
    deleted = _call(_ledger.purge, identifier_type)
    return {"deleted": deleted}


@router.get("/config")
def api_config():
    """Effective policy configuration (durations in seconds)."""
    return _ledger.settings.public_dict()


# ---------------------------------------------------------------------------
# Login flow endpoints (address taken from the request)
# ---------------------------------------------------------------------------

@router.post("/login/check")
def api_login_check(req: LoginAttemptRequest, ip: str = Depends(client_ip)):
    """Should this login attempt be processed at all?"""
    decision = _call(_protection.check, ip, req.email)
    return _decision_response(decision)


@router.post("/login/failure")
def api_login_failure(req: LoginAttemptRequest, ip: str = Depends(client_ip)):
    """Record a failed login for the calling address and the given email."""
    decision = _call(_protection.register_failure, ip, req.email)
    return _decision_response(decision)


@router.post("/login/success", dependencies=[Depends(require_admin)])
def api_login_success(req: LoginSuccessRequest, ip: str = Depends(client_ip)):
    """Clear failure state after a successful login.

    Host-only: the login handler calls this once it has verified the
    credentials, so it carries the admin token and may name the user's
    address in the body.
    """
    cleared = _call(_protection.register_success, req.ip or ip, req.email)
    return {"cleared": cleared}
