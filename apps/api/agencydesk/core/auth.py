from dataclasses import dataclass, field

from jose import JWTError, jwt
from starlette.requests import Request

from agencydesk.core.config import get_settings


@dataclass
class AuthUser:
    sub: str
    roles: list[str] = field(default_factory=list)


ANONYMOUS = "anonymous"


def bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    return auth_header.removeprefix("Bearer ").strip() if auth_header.startswith("Bearer ") else ""


def decode_user(token: str) -> AuthUser | None:
    """Return the user a token was issued for, or ``None`` when it does not verify."""
    if not token:
        return None
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None

    roles = payload.get("roles", ["user"])
    if not isinstance(roles, list):
        roles = ["user"]
    return AuthUser(sub=str(payload.get("sub", ANONYMOUS)), roles=[str(role) for role in roles])


async def get_current_user(request: Request) -> AuthUser:
    return decode_user(bearer_token(request)) or AuthUser(sub=ANONYMOUS, roles=["guest"])
