"""FastAPI dependencies for authentication and authorization.

Dependencies:
  get_current_user  → decode JWT, load user from DB, return User
  get_actor_id      → the id recorded as actor on ledger writes
  require_admin     → restrict to admin users
"""

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.auth.jwt import decode_token
from app.database import get_session_factory
from app.models.user import User

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/login")


async def get_current_user(
    token: str = Depends(oauth2_scheme),
    session_factory: async_sessionmaker = Depends(get_session_factory),
) -> User:
    """Decode the JWT and load the user it names.

    The lookup uses its own short session, closed before the route opens
    its transaction.
    """
    payload = decode_token(token)
    user_id: str | None = payload.get("sub")
    if not user_id or payload.get("type") != "access":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    async with session_factory() as db:
        result = await db.execute(select(User).where(User.id == user_id))
        user = result.scalar_one_or_none()
    if not user or not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found or inactive",
        )
    return user


async def get_actor_id(user: User = Depends(get_current_user)) -> str:
    return user.id


async def require_admin(user: User = Depends(get_current_user)) -> User:
    """Restrict endpoint to admins only."""
    if not user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return user
