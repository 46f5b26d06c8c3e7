"""
Access tokens and capability checks.

A token carries the caller identity, the admin flag and the role the caller
holds in every event they are registered to. Route handlers only trust what
the verified token says; capability checks are pure functions over it.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from functools import wraps
from typing import Dict

from flask import current_app, request
from jose import JWTError, jwt

from shared.state_machine import TournamentStatus
from .errors import ForbiddenError, UnauthorizedError
from .models import Role

logger = logging.getLogger(__name__)


@dataclass
class AuthUser:
    id: int
    admin: bool = False
    # event id -> role
    roles: Dict[int, str] = field(default_factory=dict)

    def to_claims(self) -> dict:
        return {
            'id': self.id,
            'admin': self.admin,
            'roles': {str(event_id): role for event_id, role in self.roles.items()},
        }

    @classmethod
    def from_claims(cls, claims: dict) -> "AuthUser":
        return cls(
            id=int(claims['id']),
            admin=bool(claims.get('admin', False)),
            roles={int(event_id): role for event_id, role in (claims.get('roles') or {}).items()},
        )


def issue_token(user: AuthUser, secret: str, ttl: int = 3600, algorithm: str = 'HS256') -> str:
    claims = user.to_claims()
    claims['exp'] = datetime.now(timezone.utc) + timedelta(seconds=ttl)
    return jwt.encode(claims, secret, algorithm=algorithm)


def decode_token(token: str, secret: str, algorithm: str = 'HS256') -> AuthUser:
    try:
        claims = jwt.decode(token, secret, algorithms=[algorithm])
        return AuthUser.from_claims(claims)
    except (JWTError, KeyError, TypeError, ValueError) as e:
        logger.debug(f"Rejected token: {e}")
        raise UnauthorizedError("Invalid or expired token")


# ==================== Capabilities ====================

def is_registered(user: AuthUser, event_id: int) -> bool:
    return user is not None and event_id in user.roles


def can_manage_event(user: AuthUser, event_id: int) -> bool:
    """Admins manage every event, organizers manage their own."""
    if user is None:
        return False
    return user.admin or user.roles.get(event_id) == Role.ORGANIZER


def can_read_event(user: AuthUser, event_id: int) -> bool:
    return user is not None and (user.admin or is_registered(user, event_id))


def can_see_tournament(user: AuthUser, tournament) -> bool:
    """Hidden tournaments are only visible to those who manage the event."""
    if not can_read_event(user, tournament.event_id):
        return False
    return tournament.status != TournamentStatus.HIDDEN.value or can_manage_event(user, tournament.event_id)


def require(condition: bool, message: str = None):
    if not condition:
        raise ForbiddenError(message)


# ==================== Request helpers ====================

# Decoded caller, cached in the WSGI environ of the current request
CALLER_KEY = "frilan.caller"


def current_user() -> AuthUser:
    """Caller of the current request, decoded from the bearer token."""
    if CALLER_KEY in request.environ:
        return request.environ[CALLER_KEY]

    header = request.headers.get('Authorization', '')
    scheme, _, token = header.partition(' ')
    if scheme.lower() != 'bearer' or not token.strip():
        raise UnauthorizedError()

    caller = decode_token(
        token.strip(),
        current_app.config['JWT_SECRET'],
        current_app.config['JWT_ALGORITHM'],
    )
    request.environ[CALLER_KEY] = caller
    return caller


def login_required(view):
    @wraps(view)
    def wrapper(*args, **kwargs):
        current_user()
        return view(*args, **kwargs)
    return wrapper


def admin_required(view):
    @wraps(view)
    def wrapper(*args, **kwargs):
        require(current_user().admin)
        return view(*args, **kwargs)
    return wrapper
