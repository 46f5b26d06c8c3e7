import logging
from typing import Dict, List

from shared.event_bus import EntityEventBus
from shared.events import EntityClass, EntityEventType
from .auth import AuthUser, require
from .errors import (
    AdminRemovedError, ConflictError, ForbiddenError, StateError, UnauthorizedError,
    UserNotFoundError, ValidationError,
)
from .models import db, transaction, Registration, User
from .query import apply_filters
from .schemas import UserCreate, UserPatch

logger = logging.getLogger(__name__)

USERNAME_TAKEN = "This username is already taken"


class UserRegistry:
    """
    Manages user accounts:
    - Sign-up, with the very first account becoming administrator
    - Credential checks and token claims
    - Profile updates and deletion, never leaving the platform without an admin
    """

    RELATIONS = ('registrations',)

    def __init__(self, bus: EntityEventBus):
        self.bus = bus

    def find_by_username(self, username: str):
        """Case-insensitive lookup."""
        return User.query.filter(db.func.lower(User.username) == username.strip().lower()).first()

    def create_user(self, payload: UserCreate) -> User:
        if self.find_by_username(payload.username):
            raise ConflictError(USERNAME_TAKEN)

        user = User(
            username=payload.username,
            display_name=payload.display_name,
            profile_picture=payload.profile_picture,
            admin=User.query.count() == 0,
        )
        user.set_password(payload.password)

        with transaction(USERNAME_TAKEN) as session:
            session.add(user)

        logger.info(f"Created user {user.id} ({user.username}){' as admin' if user.admin else ''}")
        self.bus.emit(EntityEventType.CREATE, EntityClass.USER, user.to_dict())
        return user

    def authenticate(self, username: str, password: str) -> User:
        user = self.find_by_username(username or '')
        if not user or not user.check_password(password or ''):
            logger.debug(f"Failed login for '{username}'")
            raise UnauthorizedError("Incorrect username or password")
        return user

    def roles_for(self, user_id: int) -> Dict[int, str]:
        """Role held by the user in each event they are registered to."""
        return {r.event_id: r.role for r in Registration.query.filter_by(user_id=user_id).all()}

    def auth_user(self, user: User) -> AuthUser:
        return AuthUser(id=user.id, admin=user.admin, roles=self.roles_for(user.id))

    def get_user(self, user_id: int) -> User:
        user = db.session.get(User, user_id)
        if not user:
            raise UserNotFoundError()
        return user

    def list_users(self, filters: dict = None) -> List[User]:
        query = apply_filters(User.query, User, filters or {})
        return query.order_by(User.id).all()

    def _admin_count(self) -> int:
        return User.query.filter_by(admin=True).count()

    def update_user(self, caller: AuthUser, user_id: int, patch: UserPatch) -> User:
        require(caller.admin or caller.id == user_id, "You can only edit your own profile")
        user = self.get_user(user_id)
        changes = patch.changes()

        for key in ('username', 'display_name', 'password', 'admin'):
            if key in changes and changes[key] is None:
                raise ValidationError(f"{key} cannot be null")

        if 'admin' in changes and changes['admin'] != user.admin:
            if not caller.admin:
                raise ForbiddenError("Only administrators can change the admin flag")
            if user.admin and self._admin_count() <= 1:
                raise AdminRemovedError()

        if 'username' in changes:
            other = self.find_by_username(changes['username'])
            if other and other.id != user.id:
                raise ConflictError(USERNAME_TAKEN)

        previous = user.to_dict()
        with transaction(USERNAME_TAKEN):
            for key, value in changes.items():
                if key == 'password':
                    user.set_password(value)
                else:
                    setattr(user, key, value)

        logger.info(f"Updated user {user.id}: {sorted(changes)}")
        self.bus.emit(EntityEventType.UPDATE, EntityClass.USER, user.to_dict(), previous)
        return user

    def delete_user(self, caller: AuthUser, user_id: int):
        require(caller.admin)
        user = self.get_user(user_id)

        if user.admin and self._admin_count() <= 1:
            raise AdminRemovedError()
        if Registration.query.filter_by(user_id=user.id).count():
            raise StateError("Cannot delete a user who is registered to an event")

        previous = user.to_dict()
        with transaction() as session:
            session.delete(user)

        logger.info(f"Deleted user {user_id}")
        self.bus.emit(EntityEventType.DELETE, EntityClass.USER, previous)

    def serialize(self, user: User, relations=()) -> dict:
        data = user.to_dict()
        if 'registrations' in relations:
            data['registrations'] = [
                r.to_dict() for r in Registration.query.filter_by(user_id=user.id).order_by(Registration.event_id)
            ]
        return data
