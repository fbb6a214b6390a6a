from dataclasses import dataclass, field
from datetime import datetime, timezone

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt

from signdesk.core.config import get_settings

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/token")

ADMIN_ROLE = "admin"


@dataclass
class Actor:
    """Authenticated operator as asserted by the session issuer."""
    subject: str
    roles: list[str] = field(default_factory=list)

    @property
    def audit_name(self) -> str:
        return f"user:{self.subject}"


async def get_current_actor(token: str = Depends(oauth2_scheme)) -> Actor:
    settings = get_settings()
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=["HS256"])
    except JWTError as exc:
        raise credentials_exception from exc

    subject: str | None = payload.get("sub")
    exp = payload.get("exp")
    if subject is None or exp is None:
        raise credentials_exception
    if datetime.fromtimestamp(exp, tz=timezone.utc) < datetime.now(timezone.utc):
        raise credentials_exception

    roles = payload.get("roles") or []
    if isinstance(roles, str):
        roles = [roles]
    return Actor(subject=subject, roles=list(roles))


async def require_admin(actor: Actor = Depends(get_current_actor)) -> Actor:
    if ADMIN_ROLE not in actor.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin role required")
    return actor
