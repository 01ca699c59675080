from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple
from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext
from fastapi import Depends, Request
from sqlalchemy import select
from convenio.core import config
from convenio.core.database import AsyncSessionLocal, utc_now
from convenio.core.errors import Forbidden, RoleNotAssigned, Unauthenticated, ValidationFailed
from convenio.models.models import User

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 60 * 24  # 24 hours
COOKIE_NAME = "token"

# pbkdf2_sha256 for new hashes (29000 rounds), bcrypt kept to verify legacy hashes
pwd_context = CryptContext(schemes=["pbkdf2_sha256", "bcrypt"], deprecated="auto")


def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


@dataclass(frozen=True)
class AuthSession:
    """A signed-in user bound to one selected role."""
    user_id: int
    roles: Tuple[str, ...]
    current_role: str
    expires_at: datetime


def _expiry() -> datetime:
    return utc_now() + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)


def start_session(user: User, role: str) -> AuthSession:
    if not user.has_role(role):
        raise RoleNotAssigned()
    return AuthSession(user_id=user.id, roles=tuple(user.roles), current_role=role, expires_at=_expiry())


def create_access_token(auth: AuthSession) -> str:
    to_encode = {
        "sub": str(auth.user_id),
        "roles": list(auth.roles),
        "role": auth.current_role,
        "exp": auth.expires_at,
    }
    return jwt.encode(to_encode, config.JWT_SECRET, algorithm=ALGORITHM)


def decode_access_token(token: str) -> AuthSession:
    try:
        payload = jwt.decode(token, config.JWT_SECRET, algorithms=[ALGORITHM])
    except ExpiredSignatureError:
        raise Unauthenticated("Sessão expirada", reason="TOKEN_EXPIRED")
    except JWTError:
        raise Unauthenticated("Token inválido", reason="INVALID_TOKEN")

    sub = payload.get("sub")
    role = payload.get("role")
    if not sub or not role:
        raise Unauthenticated("Token inválido", reason="INVALID_TOKEN")
    return AuthSession(
        user_id=int(sub),
        roles=tuple(payload.get("roles") or ()),
        current_role=role,
        expires_at=datetime.fromtimestamp(payload["exp"], timezone.utc).replace(tzinfo=None),
    )


LOGIN_TICKET_MINUTES = 5


def create_login_ticket(user_id: int) -> str:
    """Short-lived proof of a successful login, exchanged for a session by select-role."""
    expire = utc_now() + timedelta(minutes=LOGIN_TICKET_MINUTES)
    return jwt.encode({"sub": str(user_id), "purpose": "role_selection", "exp": expire}, config.JWT_SECRET, algorithm=ALGORITHM)


def verify_login_ticket(ticket: str) -> int:
    try:
        payload = jwt.decode(ticket, config.JWT_SECRET, algorithms=[ALGORITHM])
    except JWTError:
        raise Unauthenticated("Login expirado, entre novamente")
    if payload.get("purpose") != "role_selection" or not payload.get("sub"):
        raise Unauthenticated("Login expirado, entre novamente")
    return int(payload["sub"])


def _token_from_request(request: Request) -> Optional[str]:
    header = request.headers.get("Authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip() or None
    return request.cookies.get(COOKIE_NAME)


@dataclass
class CurrentUser:
    id: int
    name: str
    national_id: str
    roles: Tuple[str, ...]
    current_role: str
    percentage: Optional[int] = None

    @property
    def is_admin(self) -> bool:
        return self.current_role == "admin"


async def get_current_user(request: Request) -> CurrentUser:
    token = _token_from_request(request)
    if not token:
        raise Unauthenticated()
    auth = decode_access_token(token)

    async with AsyncSessionLocal() as session:
        user = (await session.execute(select(User).where(User.id == auth.user_id))).scalar()
    if not user:
        raise Unauthenticated("Usuário não encontrado")
    # Roles may have been revoked after the token was signed
    if not user.has_role(auth.current_role):
        raise RoleNotAssigned()

    return CurrentUser(
        id=user.id,
        name=user.name,
        national_id=user.national_id,
        roles=tuple(user.roles),
        current_role=auth.current_role,
        percentage=user.percentage,
    )


def require_roles(*allowed):
    """Dependency factory: the caller's current role must be one of ``allowed``."""
    async def checker(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if user.current_role not in allowed:
            raise Forbidden()
        return user
    return checker


def ensure_owner_or_admin(user: CurrentUser, owner_id: int):
    if user.is_admin:
        return
    if user.id != owner_id:
        raise Forbidden()


def acting_professional(user: CurrentUser, professional_id: Optional[int] = None) -> int:
    """Professionals always act for themselves; admins must name the professional."""
    if not user.is_admin:
        return user.id
    if not professional_id:
        raise ValidationFailed("Informe o profissional")
    return professional_id
