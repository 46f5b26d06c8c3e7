import logging
from typing import List

from shared.event_bus import EntityEventBus
from shared.events import EntityClass, EntityEventType
from .auth import AuthUser, can_see_tournament
from .errors import ConflictError, EventNotFoundError, ValidationError
from .models import db, transaction, Event, Registration, Team, TeamMember, Tournament
from .query import apply_filters
from .schemas import EventCreate, EventPatch

logger = logging.getLogger(__name__)

SHORT_NAME_TAKEN = "An event with this short name already exists"


class EventRegistry:
    """LAN events. Deleting an event removes everything that belongs to it."""

    RELATIONS = ('registrations', 'tournaments')

    def __init__(self, bus: EntityEventBus):
        self.bus = bus

    def _check_short_name(self, short_name: str, event_id: int = None):
        other = Event.query.filter_by(short_name=short_name).first()
        if other and other.id != event_id:
            raise ConflictError(SHORT_NAME_TAKEN)

    def create_event(self, payload: EventCreate) -> Event:
        self._check_short_name(payload.short_name)

        event = Event(
            name=payload.name,
            short_name=payload.short_name,
            start=payload.start,
            end=payload.end,
        )
        with transaction(SHORT_NAME_TAKEN) as session:
            session.add(event)

        logger.info(f"Created event {event.id} ({event.short_name})")
        self.bus.emit(EntityEventType.CREATE, EntityClass.EVENT, event.to_dict())
        return event

    def get_event(self, event_id: int) -> Event:
        event = db.session.get(Event, event_id)
        if not event:
            raise EventNotFoundError()
        return event

    def list_events(self, filters: dict = None) -> List[Event]:
        query = apply_filters(Event.query, Event, filters or {})
        return query.order_by(Event.start).all()

    def update_event(self, event_id: int, patch: EventPatch) -> Event:
        event = self.get_event(event_id)
        changes = patch.changes()

        for key, value in changes.items():
            if value is None:
                raise ValidationError(f"{key} cannot be null")

        start = changes.get('start', event.start)
        end = changes.get('end', event.end)
        if end < start:
            raise ValidationError("The end of the event must not be before its start")

        if 'short_name' in changes:
            self._check_short_name(changes['short_name'], event.id)

        previous = event.to_dict()
        with transaction(SHORT_NAME_TAKEN):
            for key, value in changes.items():
                setattr(event, key, value)

        logger.info(f"Updated event {event.id}: {sorted(changes)}")
        self.bus.emit(EntityEventType.UPDATE, EntityClass.EVENT, event.to_dict(), previous)
        return event

    def delete_event(self, event_id: int):
        """Delete an event along with its registrations, tournaments and teams."""
        event = self.get_event(event_id)

        tournaments = Tournament.query.filter_by(event_id=event.id).all()
        tournament_ids = [t.id for t in tournaments]
        teams = Team.query.filter(Team.tournament_id.in_(tournament_ids)).all() if tournament_ids else []
        registrations = Registration.query.filter_by(event_id=event.id).all()

        removed = (
            [(EntityClass.TEAM, t.to_dict()) for t in teams]
            + [(EntityClass.TOURNAMENT, t.to_dict()) for t in tournaments]
            + [(EntityClass.REGISTRATION, r.to_event_dict()) for r in registrations]
            + [(EntityClass.EVENT, event.to_dict())]
        )

        # children first, foreign keys point upwards
        with transaction() as session:
            TeamMember.query.filter_by(event_id=event.id).delete()
            if tournament_ids:
                Team.query.filter(Team.tournament_id.in_(tournament_ids)).delete()
            Tournament.query.filter_by(event_id=event.id).delete()
            Registration.query.filter_by(event_id=event.id).delete()
            session.delete(event)

        logger.info(
            f"Deleted event {event_id} with {len(tournaments)} tournaments, "
            f"{len(teams)} teams and {len(registrations)} registrations"
        )
        for cls, entity in removed:
            self.bus.emit(EntityEventType.DELETE, cls, entity)

    def serialize(self, caller: AuthUser, event: Event, relations=()) -> dict:
        data = event.to_dict()
        if 'registrations' in relations:
            data['registrations'] = [
                r.to_dict() for r in Registration.query.filter_by(event_id=event.id).order_by(Registration.user_id)
            ]
        if 'tournaments' in relations:
            tournaments = Tournament.query.filter_by(event_id=event.id).order_by(Tournament.date)
            data['tournaments'] = [t.to_dict() for t in tournaments if can_see_tournament(caller, t)]
        return data
