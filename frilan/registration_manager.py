import logging
from typing import List, Tuple

from shared.event_bus import EntityEventBus
from shared.events import EntityClass, EntityEventType
from shared.state_machine import LOCKED_STATUSES
from .auth import AuthUser, can_manage_event, can_see_tournament, require
from .errors import ForbiddenError, RegistrationNotFoundError, StateError, ValidationError
from .models import db, transaction, Event, Registration, Role, Team, TeamMember, Tournament, User
from .event_registry import EventRegistry
from .query import apply_filters
from .schemas import RegistrationPatch
from .team_manager import recount_teams
from .user_registry import UserRegistry

logger = logging.getLogger(__name__)


class RegistrationManager:
    """
    Manages event registrations, the link between a user and an event.
    The role held in the registration drives every per-event permission.
    """

    RELATIONS = ('user', 'event', 'teams')

    def __init__(self, bus: EntityEventBus, users: UserRegistry, events: EventRegistry):
        self.bus = bus
        self.users = users
        self.events = events

    def get_registration(self, event_id: int, user_id: int) -> Registration:
        registration = db.session.get(Registration, (user_id, event_id))
        if not registration:
            raise RegistrationNotFoundError()
        return registration

    def list_registrations(self, event_id: int, filters: dict = None) -> List[Registration]:
        self.events.get_event(event_id)
        query = apply_filters(Registration.query.filter_by(event_id=event_id), Registration, filters or {})
        return query.order_by(Registration.user_id).all()

    def _check_presence(self, event: Event, arrival, departure):
        for label, moment in (('arrival', arrival), ('departure', departure)):
            if moment is not None and not event.start <= moment <= event.end:
                raise ValidationError(f"The {label} must be within the event")
        if arrival is not None and departure is not None and departure < arrival:
            raise ValidationError("The departure must not be before the arrival")

    def put_registration(
        self,
        caller: AuthUser,
        event_id: int,
        user_id: int,
        patch: RegistrationPatch
    ) -> Tuple[Registration, bool]:
        """
        Register a user to an event, or update their registration.

        Only the supplied fields are written, so changing the role of an
        existing registration keeps its arrival, departure and score.
        Returns the registration and whether it was created.
        """
        require(can_manage_event(caller, event_id), "Only organizers can manage registrations")
        event = self.events.get_event(event_id)
        self.users.get_user(user_id)
        changes = patch.changes()

        if 'role' in changes:
            if changes['role'] is None:
                raise ValidationError("role cannot be null")
            if not caller.admin:
                raise ForbiddenError("Only administrators can change roles")

        registration = db.session.get(Registration, (user_id, event_id))
        created = registration is None
        previous = None if created else registration.to_event_dict()

        arrival = changes.get('arrival', None if created else registration.arrival)
        departure = changes.get('departure', None if created else registration.departure)
        self._check_presence(event, arrival, departure)

        with transaction() as session:
            if created:
                registration = Registration(user_id=user_id, event_id=event_id, role=Role.PLAYER, score=0)
                session.add(registration)
            for key, value in changes.items():
                setattr(registration, key, value)

        if created:
            logger.info(f"Registered user {user_id} to event {event_id} as {registration.role}")
            self.bus.emit(EntityEventType.CREATE, EntityClass.REGISTRATION, registration.to_event_dict())
        else:
            logger.info(f"Updated registration of user {user_id} to event {event_id}: {sorted(changes)}")
            self.bus.emit(EntityEventType.UPDATE, EntityClass.REGISTRATION, registration.to_event_dict(), previous)
        return registration, created

    def delete_registration(self, caller: AuthUser, event_id: int, user_id: int):
        """
        Unregister a user. Their memberships go with the registration; teams
        left empty are deleted. Not allowed while the user plays in a
        tournament that has started.
        """
        require(can_manage_event(caller, event_id), "Only organizers can manage registrations")
        registration = self.get_registration(event_id, user_id)

        memberships = TeamMember.query.filter_by(event_id=event_id, user_id=user_id).all()
        tournaments = {
            m.tournament_id: db.session.get(Tournament, m.tournament_id) for m in memberships
        }
        if any(t.status in [s.value for s in LOCKED_STATUSES] for t in tournaments.values()):
            raise StateError("Cannot unregister a user whose team is in a tournament that has already started")

        data = registration.to_event_dict()
        deleted_teams = []
        previous = {tid: t.to_dict() for tid, t in tournaments.items()}

        with transaction() as session:
            for membership in memberships:
                session.delete(membership)
            session.flush()
            for membership in memberships:
                team = db.session.get(Team, membership.team_id)
                if team and TeamMember.query.filter_by(team_id=team.id).count() == 0:
                    deleted_teams.append(team.to_dict())
                    session.delete(team)
            changed = [t for t in tournaments.values() if recount_teams(t)]
            session.delete(registration)

        logger.info(f"Unregistered user {user_id} from event {event_id}")
        for team in deleted_teams:
            self.bus.emit(EntityEventType.DELETE, EntityClass.TEAM, team)
        for tournament in changed:
            self.bus.emit(EntityEventType.UPDATE, EntityClass.TOURNAMENT, tournament.to_dict(), previous[tournament.id])
        self.bus.emit(EntityEventType.DELETE, EntityClass.REGISTRATION, data)

    def serialize(self, caller: AuthUser, registration: Registration, relations=()) -> dict:
        data = registration.to_dict()
        if 'user' in relations:
            data['user'] = db.session.get(User, registration.user_id).to_dict()
        if 'event' in relations:
            data['event'] = db.session.get(Event, registration.event_id).to_dict()
        if 'teams' in relations:
            teams = (
                Team.query.join(TeamMember, TeamMember.team_id == Team.id)
                .filter(TeamMember.user_id == registration.user_id, TeamMember.event_id == registration.event_id)
                .order_by(Team.id)
                .all()
            )
            data['teams'] = [
                t.to_dict() for t in teams
                if can_see_tournament(caller, db.session.get(Tournament, t.tournament_id))
            ]
        return data
