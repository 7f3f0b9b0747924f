import logging
from dataclasses import asdict, dataclass
from typing import Optional

from itsdangerous import BadSignature, URLSafeTimedSerializer
from sqlalchemy import select
from sqlalchemy.orm import Session

from config import get_settings
from models import User

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExternalPrincipal:
    """An identity asserted by the upstream sign-in provider."""

    external_id: str
    email: str
    name: Optional[str] = None
    avatar_url: Optional[str] = None


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.identity_secret, salt="principal")


def issue_principal_token(principal: ExternalPrincipal) -> str:
    return _serializer().dumps(asdict(principal))


def read_principal_token(token: Optional[str]) -> Optional[ExternalPrincipal]:
    if not token:
        return None
    settings = get_settings()
    try:
        data = _serializer().loads(token, max_age=settings.identity_max_age_secs)
    except BadSignature:
        return None

    if not isinstance(data, dict) or not data.get("external_id") or not data.get(
        "email"
    ):
        return None
    return ExternalPrincipal(
        external_id=str(data["external_id"]),
        email=str(data["email"]),
        name=data.get("name"),
        avatar_url=data.get("avatar_url"),
    )


def sync_user(session: Session, principal: ExternalPrincipal) -> User:
    """Create the local user on first sign-in, refresh profile fields afterwards."""
    user = session.scalar(
        select(User).where(User.external_id == principal.external_id)
    )
    if user is None:
        user = User(
            external_id=principal.external_id,
            email=principal.email,
            name=principal.name or principal.email.split("@")[0],
            avatar_url=principal.avatar_url,
        )
        session.add(user)
        session.commit()
        session.refresh(user)
        logger.info(f"user_created: user_id={user.id}")
        return user

    user.email = principal.email
    user.name = principal.name or user.name
    user.avatar_url = principal.avatar_url or user.avatar_url
    session.commit()
    return user


def current_user(
    session: Session, principal: Optional[ExternalPrincipal]
) -> Optional[User]:
    if principal is None:
        return None
    return session.scalar(
        select(User).where(User.external_id == principal.external_id)
    )
