"""Authentication dependencies for API user scoping."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.user import User
from services.credits import Principal
from services.guest_ledger import guest_identity
from services.session_token import decode_session_token


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    user_id: str
    email: Optional[str] = None


def client_ip(request: Request) -> str:
    """
    Caller IP used for guest metering and rate limits.

    The socket peer, unless TRUSTED_PROXY_HOPS proxies sit in front of the
    API; then the X-Forwarded-For entry that many hops from the right.
    """
    peer = request.client.host if request.client and request.client.host else None
    hops = max(int(settings.TRUSTED_PROXY_HOPS or 0), 0)
    if hops:
        forwarded = [part.strip() for part in request.headers.get("x-forwarded-for", "").split(",") if part.strip()]
        if len(forwarded) >= hops:
            return forwarded[-hops]
    return peer or "unknown"


async def ensure_user_record(db: AsyncSession, auth: Optional[AuthContext]) -> None:
    """Create the local user row for a first-time session holder."""
    if auth is None:
        return
    result = await db.execute(select(User.id).where(User.id == auth.user_id))
    if result.scalar_one_or_none():
        return

    db.add(User(id=auth.user_id, email=auth.email or f"{auth.user_id}@local.invalid"))
    await db.commit()


def _auth_from_credentials(credentials: HTTPAuthorizationCredentials) -> AuthContext:
    try:
        payload = decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    return AuthContext(
        user_id=str(payload.get("sub", "")),
        email=str(payload.get("email", "")) or None,
    )


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve authenticated user from Bearer session token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")
    return _auth_from_credentials(credentials)


async def get_optional_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> Optional[AuthContext]:
    """Like get_auth_context, but anonymous callers resolve to None instead of 401."""
    if not credentials:
        return None
    if credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Unsupported authorization scheme.")
    return _auth_from_credentials(credentials)


async def get_principal(
    request: Request,
    auth: Optional[AuthContext] = Depends(get_optional_auth_context),
) -> Principal:
    """Signed-in user, or a guest keyed by the hashed caller IP."""
    if auth is not None:
        return Principal(user_id=auth.user_id)
    return Principal(guest=guest_identity(client_ip(request), request.headers.get("user-agent")))
