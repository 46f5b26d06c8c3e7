"""
Tournament registry.

Responsibilities:
- Tournament CRUD within an event
- Status changes through the tournament state machine
- Ending a tournament: turning a final ranking into team results and
  registration scores
"""
import logging
from typing import List

from shared.event_bus import EntityEventBus
from shared.events import EntityClass, EntityEventType
from shared.state_machine import TournamentStateMachine, TournamentStatus
from .auth import AuthUser, can_manage_event, can_read_event, can_see_tournament, require
from .errors import (
    ConflictError, ForbiddenError, StateError, TournamentNotFoundError, TournamentStartedError,
    ValidationError,
)
from .event_registry import EventRegistry
from .models import db, transaction, Event, Registration, Team, TeamMember, Tournament
from .points_distribution import distribute
from .query import apply_filters
from .schemas import Ranking, TournamentCreate, TournamentPatch
from .team_manager import is_complete, member_counts, recount_teams

logger = logging.getLogger(__name__)

SHORT_NAME_TAKEN = "A tournament with this short name already exists in this event"

# Fields frozen once the tournament has started
SCHEDULING_FIELDS = (
    'date', 'duration', 'team_size_min', 'team_size_max', 'team_count_min', 'team_count_max',
)
NULLABLE_FIELDS = ('background',)


class TournamentRegistry:
    """
    Manages tournament lifecycle:
    - Create/update/delete tournament records
    - Publish, unpublish and start through the state machine
    - End with a ranking, awarding points to every member
    """

    RELATIONS = ('event', 'teams')

    def __init__(self, bus: EntityEventBus, events: EventRegistry):
        self.bus = bus
        self.events = events

    # ==================== Lookups ====================

    def _get(self, tournament_id: int) -> Tournament:
        tournament = db.session.get(Tournament, tournament_id)
        if not tournament:
            raise TournamentNotFoundError()
        return tournament

    def get_tournament(self, caller: AuthUser, tournament_id: int) -> Tournament:
        """Hidden tournaments look absent to anyone but organizers."""
        tournament = self._get(tournament_id)
        if not can_read_event(caller, tournament.event_id):
            raise ForbiddenError("You are not registered to this event")
        if not can_see_tournament(caller, tournament):
            raise TournamentNotFoundError()
        return tournament

    def list_tournaments(self, caller: AuthUser, event_id: int, filters: dict = None) -> List[Tournament]:
        require(can_read_event(caller, event_id), "You are not registered to this event")
        self.events.get_event(event_id)

        query = apply_filters(Tournament.query.filter_by(event_id=event_id), Tournament, filters or {})
        if not can_manage_event(caller, event_id):
            query = query.filter(Tournament.status != TournamentStatus.HIDDEN.value)
        return query.order_by(Tournament.date, Tournament.id).all()

    def _check_short_name(self, event_id: int, short_name: str, tournament_id: int = None):
        other = Tournament.query.filter_by(event_id=event_id, short_name=short_name).first()
        if other and other.id != tournament_id:
            raise ConflictError(SHORT_NAME_TAKEN)

    def _check_schedule(self, event: Event, values: dict):
        if not event.contains(values['date']):
            raise ValidationError("The tournament must take place during the event")
        if values['team_size_max'] < values['team_size_min']:
            raise ValidationError("team_size_max must be greater than or equal to team_size_min")
        if values['team_count_max'] < values['team_count_min']:
            raise ValidationError("team_count_max must be greater than or equal to team_count_min")

    # ==================== Mutations ====================

    def create_tournament(self, caller: AuthUser, event_id: int, payload: TournamentCreate) -> Tournament:
        require(can_manage_event(caller, event_id), "Only organizers can create tournaments")
        event = self.events.get_event(event_id)
        TournamentStateMachine.check_initial_state(payload.status)

        values = payload.model_dump()
        self._check_schedule(event, values)
        self._check_short_name(event.id, payload.short_name)

        values['status'] = payload.status.value
        tournament = Tournament(event_id=event.id, team_count=0, **values)
        with transaction(SHORT_NAME_TAKEN) as session:
            session.add(tournament)

        logger.info(f"Created tournament {tournament.id} ({tournament.short_name}) in event {event.id}")
        self.bus.emit(EntityEventType.CREATE, EntityClass.TOURNAMENT, tournament.to_dict())
        return tournament

    def update_tournament(self, caller: AuthUser, tournament_id: int, patch: TournamentPatch) -> Tournament:
        tournament = self._get(tournament_id)
        require(can_manage_event(caller, tournament.event_id), "Only organizers can edit tournaments")

        changes = patch.changes()
        for key, value in changes.items():
            if value is None and key not in NULLABLE_FIELDS:
                raise ValidationError(f"{key} cannot be null")

        target = changes.pop('status', None)
        sm = TournamentStateMachine.from_state_string(tournament.status)

        if sm.is_locked:
            frozen = [k for k in SCHEDULING_FIELDS if k in changes and changes[k] != getattr(tournament, k)]
            if frozen:
                raise TournamentStartedError(
                    f"Cannot change {', '.join(frozen)} of a tournament that has already started"
                )

        values = {k: changes.get(k, getattr(tournament, k)) for k in SCHEDULING_FIELDS}
        self._check_schedule(self.events.get_event(tournament.event_id), values)
        if 'short_name' in changes:
            self._check_short_name(tournament.event_id, changes['short_name'], tournament.id)

        previous = tournament.to_dict()
        removed_teams = []
        with transaction(SHORT_NAME_TAKEN) as session:
            for key, value in changes.items():
                setattr(tournament, key, value)
            recount_teams(tournament)

            if target is not None and target != sm.state:
                sm.transition_to(target, {
                    'team_count': tournament.team_count,
                    'team_count_min': tournament.team_count_min,
                    'team_count_max': tournament.team_count_max,
                })
                tournament.status = sm.state.value

                if sm.state == TournamentStatus.STARTED:
                    removed_teams = self._drop_incomplete_teams(session, tournament)

        logger.info(f"Updated tournament {tournament.id}: {sorted(changes)}, status {tournament.status}")
        for team in removed_teams:
            self.bus.emit(EntityEventType.DELETE, EntityClass.TEAM, team)
        self.bus.emit(EntityEventType.UPDATE, EntityClass.TOURNAMENT, tournament.to_dict(), previous)
        return tournament

    def _drop_incomplete_teams(self, session, tournament: Tournament) -> List[dict]:
        """Delete the teams that cannot play, returning them as dicts."""
        removed = []
        for team_id, size in member_counts(tournament.id).items():
            if is_complete(tournament, size):
                continue
            team = db.session.get(Team, team_id)
            removed.append(team.to_dict())
            TeamMember.query.filter_by(team_id=team_id).delete()
            session.delete(team)

        if removed:
            logger.info(f"Removed {len(removed)} incomplete teams from tournament {tournament.id}")
        return removed

    def delete_tournament(self, caller: AuthUser, tournament_id: int):
        tournament = self._get(tournament_id)
        require(can_manage_event(caller, tournament.event_id), "Only organizers can delete tournaments")
        if TournamentStateMachine.from_state_string(tournament.status).is_locked:
            raise TournamentStartedError("Cannot delete a tournament that has already started")

        teams = [t.to_dict() for t in Team.query.filter_by(tournament_id=tournament.id).all()]
        data = tournament.to_dict()
        with transaction() as session:
            TeamMember.query.filter_by(tournament_id=tournament.id).delete()
            Team.query.filter_by(tournament_id=tournament.id).delete()
            session.delete(tournament)

        logger.info(f"Deleted tournament {tournament_id} with {len(teams)} teams")
        for team in teams:
            self.bus.emit(EntityEventType.DELETE, EntityClass.TEAM, team)
        self.bus.emit(EntityEventType.DELETE, EntityClass.TOURNAMENT, data)

    # ==================== Ending ====================

    def _check_ranking(self, teams: List[Team], ranking: Ranking) -> List[List[int]]:
        groups = ranking.groups()
        ranked = [team_id for group in groups for team_id in group]

        if len(ranked) != len(set(ranked)):
            raise ValidationError("A team cannot be ranked more than once")

        team_ids = {t.id for t in teams}
        unknown = set(ranked) - team_ids
        if unknown:
            raise ValidationError(f"Teams {sorted(unknown)} are not part of this tournament")
        missing = team_ids - set(ranked)
        if missing:
            raise ValidationError(f"Teams {sorted(missing)} are missing from the ranking")

        return groups

    def end_tournament(self, caller: AuthUser, tournament_id: int, ranking: Ranking) -> Tournament:
        """
        Close a tournament with its final ranking.

        Every team gets the points of its rank as ``result``, and the score
        of each member's registration moves by the difference with the
        team's previous result. Ending an already finished tournament again
        therefore replaces the previous ranking instead of adding to it.
        """
        tournament = self._get(tournament_id)
        require(can_manage_event(caller, tournament.event_id), "Only organizers can end tournaments")

        sm = TournamentStateMachine.from_state_string(tournament.status)
        action = 'refinish' if sm.state == TournamentStatus.FINISHED else 'finish'
        if not sm.can_transition(action):
            raise StateError("Cannot end a tournament that has not started")

        teams = Team.query.filter_by(tournament_id=tournament.id).all()
        groups = self._check_ranking(teams, ranking)
        by_id = {t.id: t for t in teams}

        # compute every award before writing anything
        awards = []
        rank = 1
        for group in groups:
            points = distribute(ranking.distribution, rank, len(group), len(teams), ranking.points)
            awards.extend((by_id[team_id], rank, points) for team_id in group)
            rank += len(group)

        previous = tournament.to_dict()
        previous_teams = {t.id: t.to_dict() for t in teams}
        updated_registrations = {}

        with transaction():
            for team, team_rank, points in awards:
                delta = points - team.result
                team.result = points
                team.rank = team_rank
                for member in TeamMember.query.filter_by(team_id=team.id).all():
                    registration = db.session.get(Registration, (member.user_id, member.event_id))
                    if registration.user_id not in updated_registrations:
                        updated_registrations[registration.user_id] = registration.to_event_dict()
                    registration.score += delta

            sm.transition(action)
            tournament.status = sm.state.value
            tournament.points_per_player = ranking.points
            tournament.points_distribution = ranking.distribution.value

        logger.info(f"Ended tournament {tournament.id} with {len(teams)} teams ranked")
        for team, _, _ in awards:
            self.bus.emit(EntityEventType.UPDATE, EntityClass.TEAM, team.to_dict(), previous_teams[team.id])
        for user_id, before in updated_registrations.items():
            registration = db.session.get(Registration, (user_id, tournament.event_id))
            self.bus.emit(EntityEventType.UPDATE, EntityClass.REGISTRATION, registration.to_event_dict(), before)
        self.bus.emit(EntityEventType.UPDATE, EntityClass.TOURNAMENT, tournament.to_dict(), previous)
        return tournament

    def serialize(self, tournament: Tournament, relations=()) -> dict:
        data = tournament.to_dict()
        if 'event' in relations:
            data['event'] = self.events.get_event(tournament.event_id).to_dict()
        if 'teams' in relations:
            data['teams'] = [
                t.to_dict() for t in Team.query.filter_by(tournament_id=tournament.id).order_by(Team.id)
            ]
        return data
