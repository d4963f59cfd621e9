"""
Authentication for the Fulfillment service.

Validates JWT bearer tokens issued by the identity service. Claims used:
`sub` (actor id) and `role` (customer | supplier | dispatch | admin).
"""
import logging
from datetime import datetime, timedelta, timezone

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from .config import Settings
from .schemas import Actor
from .transitions import Role

logger = logging.getLogger(__name__)

# auto_error=False: a missing header is a 401 like any other bad credential
security = HTTPBearer(auto_error=False)


class InvalidToken(Exception):
    pass


def issue_token(actor_id: str, role: Role | str, settings: Settings, expires_minutes: int = 60) -> str:
    """
    Create a signed token. The identity service owns this in production;
    here it serves local development and tests.
    """
    payload = {
        "sub": actor_id,
        "role": Role(role).value,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=expires_minutes),
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str | None, settings: Settings) -> Actor:
    if not token:
        raise InvalidToken("Missing token")
    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
        actor_id = payload.get("sub")
        role = payload.get("role")
        if actor_id is None or role is None:
            raise InvalidToken("Token is missing sub or role")
        return Actor(id=str(actor_id), role=Role(role))
    except (JWTError, ValueError) as e:
        raise InvalidToken(str(e)) from e


def get_current_actor(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> Actor:
    """
    FastAPI dependency returning the authenticated actor.

    Raises:
        HTTPException: 401 if the token is missing or invalid
    """
    try:
        return decode_token(credentials.credentials if credentials else None, request.app.state.settings)
    except InvalidToken as e:
        logger.warning("JWT validation error: %s", e)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )


def require_admin(actor: Actor = Depends(get_current_actor)) -> Actor:
    if actor.role is not Role.ADMIN:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return actor
