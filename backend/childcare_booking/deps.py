import hmac

from fastapi import Depends, Header, HTTPException, Request, status

from .config import get_settings
from .domain.identity import CallerIdentity
from .domain.notifications import Notifier
from .domain.transactions import TransactionRunner
from .utils.auth import decode_access_token


def get_runner(request: Request) -> TransactionRunner:
    return request.app.state.runner


def get_notifier(request: Request) -> Notifier:
    return request.app.state.notifier


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_caller(authorization: str | None = Header(default=None)) -> CallerIdentity:
    """Bearer token identity; anonymous requests act as a guest."""
    if authorization is None:
        return CallerIdentity.guest()
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise _unauthorized("Bearer token required")
    settings = get_settings()
    try:
        return decode_access_token(token, secret=settings.auth_secret, algorithms=[settings.auth_algorithm])
    except ValueError as exc:
        raise _unauthorized("invalid token") from exc


async def require_user(caller: CallerIdentity = Depends(get_caller)) -> CallerIdentity:
    if caller.user_id is None:
        raise _unauthorized("Bearer token required")
    return caller


async def require_admin(caller: CallerIdentity = Depends(require_user)) -> CallerIdentity:
    if not caller.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="administrator role required")
    return caller


async def get_sweep_initiator(
    x_cron_secret: str | None = Header(default=None),
    caller: CallerIdentity = Depends(get_caller),
) -> str:
    """Accept the scheduler's shared secret or an admin token."""
    secret = get_settings().cron_secret
    if x_cron_secret is not None:
        if secret and hmac.compare_digest(x_cron_secret, secret):
            return "system"
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="invalid cron secret")
    if caller.is_admin:
        return "admin"
    if caller.user_id is None:
        raise _unauthorized("Bearer token or cron secret required")
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="administrator role required")
