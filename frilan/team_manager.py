import logging
from typing import Dict, List, Optional

from sqlalchemy import func

from shared.event_bus import EntityEventBus
from shared.events import EntityClass, EntityEventType
from shared.state_machine import TournamentStateMachine
from .auth import AuthUser, can_manage_event, can_see_tournament, is_registered, require
from .errors import (
    ConflictError, ForbiddenError, NotFoundError, StateError, TeamNotFoundError,
    TournamentNotFoundError, TournamentStartedError, ValidationError,
)
from .models import db, transaction, Registration, Team, TeamMember, Tournament, User
from .query import apply_filters
from .schemas import TeamCreate, TeamPatch

logger = logging.getLogger(__name__)

ALREADY_IN_TEAM = "This user already has a team in this tournament"


def member_counts(tournament_id: int) -> Dict[int, int]:
    """Number of members of every team of a tournament, empty teams included."""
    counts = {team.id: 0 for team in Team.query.filter_by(tournament_id=tournament_id).all()}
    rows = (
        db.session.query(TeamMember.team_id, func.count(TeamMember.user_id))
        .filter(TeamMember.tournament_id == tournament_id)
        .group_by(TeamMember.team_id)
        .all()
    )
    for team_id, count in rows:
        counts[team_id] = count
    return counts


def is_complete(tournament: Tournament, size: int) -> bool:
    return tournament.team_size_min <= size <= tournament.team_size_max


def recount_teams(tournament: Tournament) -> bool:
    """
    Recompute ``team_count`` from the current memberships.

    Only complete teams count, i.e. those whose size lies within the
    tournament's team size bounds. Returns whether the count changed.
    """
    db.session.flush()
    count = sum(1 for size in member_counts(tournament.id).values() if is_complete(tournament, size))
    if count == tournament.team_count:
        return False
    tournament.team_count = count
    return True


class TeamManager:
    """
    Manages teams and their members:
    - Create/rename/delete teams before the tournament starts
    - Join and leave, one team per user per tournament
    - Keep the tournament's complete team count up to date
    """

    RELATIONS = ('tournament', 'members')

    def __init__(self, bus: EntityEventBus):
        self.bus = bus

    # ==================== Lookups ====================

    def _tournament(self, tournament_id: int) -> Tournament:
        tournament = db.session.get(Tournament, tournament_id)
        if not tournament:
            raise TournamentNotFoundError()
        return tournament

    def _visible_tournament(self, caller: AuthUser, tournament_id: int) -> Tournament:
        tournament = self._tournament(tournament_id)
        if not can_see_tournament(caller, tournament):
            if is_registered(caller, tournament.event_id) or caller.admin:
                raise TournamentNotFoundError()
            raise ForbiddenError("You are not registered to this event")
        return tournament

    def _team(self, team_id: int) -> Team:
        team = db.session.get(Team, team_id)
        if not team:
            raise TeamNotFoundError()
        return team

    def _member_ids(self, team: Team) -> List[int]:
        return [m.user_id for m in TeamMember.query.filter_by(team_id=team.id).order_by(TeamMember.user_id)]

    def _check_not_started(self, tournament: Tournament):
        if TournamentStateMachine.from_state_string(tournament.status).is_locked:
            raise TournamentStartedError()

    def _check_can_join(self, tournament: Tournament, user_id: int) -> Registration:
        registration = db.session.get(Registration, (user_id, tournament.event_id))
        if not registration:
            raise ValidationError(f"User {user_id} is not registered to this event")
        if TeamMember.query.filter_by(tournament_id=tournament.id, user_id=user_id).first():
            raise ConflictError(ALREADY_IN_TEAM)
        return registration

    def get_team(self, caller: AuthUser, team_id: int) -> Team:
        team = self._team(team_id)
        self._visible_tournament(caller, team.tournament_id)
        return team

    def list_teams(self, caller: AuthUser, tournament_id: int, filters: dict = None) -> List[Team]:
        self._visible_tournament(caller, tournament_id)
        query = apply_filters(Team.query.filter_by(tournament_id=tournament_id), Team, filters or {})
        return query.order_by(Team.id).all()

    def list_members(self, caller: AuthUser, team_id: int) -> List[Registration]:
        team = self.get_team(caller, team_id)
        tournament = self._tournament(team.tournament_id)
        return [
            db.session.get(Registration, (user_id, tournament.event_id))
            for user_id in self._member_ids(team)
        ]

    # ==================== Mutations ====================

    def create_team(self, caller: AuthUser, tournament_id: int, payload: TeamCreate) -> Team:
        tournament = self._visible_tournament(caller, tournament_id)
        organizer = can_manage_event(caller, tournament.event_id)
        self._check_not_started(tournament)

        if tournament.team_count >= tournament.team_count_max:
            raise StateError("This tournament already has the maximum number of teams")

        if payload.members is not None:
            require(organizer, "Only organizers can choose the members of a team")
            members = list(dict.fromkeys(payload.members))
            if len(members) > tournament.team_size_max:
                raise ValidationError(f"A team cannot have more than {tournament.team_size_max} members")
        elif db.session.get(Registration, (caller.id, tournament.event_id)):
            members = [caller.id]
        elif organizer:
            members = []
        else:
            raise ForbiddenError("You must be registered to this event to create a team")

        for user_id in members:
            self._check_can_join(tournament, user_id)

        team = Team(tournament_id=tournament.id, name=payload.name)
        previous = tournament.to_dict()
        with transaction(ALREADY_IN_TEAM) as session:
            session.add(team)
            session.flush()
            for user_id in members:
                session.add(TeamMember(
                    team_id=team.id,
                    user_id=user_id,
                    event_id=tournament.event_id,
                    tournament_id=tournament.id,
                ))
            count_changed = recount_teams(tournament)

        logger.info(f"Created team {team.id} in tournament {tournament.id} with {len(members)} members")
        self.bus.emit(EntityEventType.CREATE, EntityClass.TEAM, team.to_dict())
        if count_changed:
            self.bus.emit(EntityEventType.UPDATE, EntityClass.TOURNAMENT, tournament.to_dict(), previous)
        return team

    def add_member(self, caller: AuthUser, team_id: int, user_id: int) -> Team:
        team = self.get_team(caller, team_id)
        tournament = self._tournament(team.tournament_id)
        require(caller.id == user_id or can_manage_event(caller, tournament.event_id),
                "You can only add yourself to a team")
        self._check_not_started(tournament)

        if user_id in self._member_ids(team):
            return team
        self._check_can_join(tournament, user_id)

        size = len(self._member_ids(team))
        if size >= tournament.team_size_max:
            raise StateError("This team is full")
        if (is_complete(tournament, size + 1) and not is_complete(tournament, size)
                and tournament.team_count >= tournament.team_count_max):
            raise StateError("This tournament already has the maximum number of complete teams")

        previous = tournament.to_dict()
        with transaction(ALREADY_IN_TEAM) as session:
            session.add(TeamMember(
                team_id=team.id,
                user_id=user_id,
                event_id=tournament.event_id,
                tournament_id=tournament.id,
            ))
            count_changed = recount_teams(tournament)

        logger.info(f"User {user_id} joined team {team.id}")
        self.bus.emit(EntityEventType.UPDATE, EntityClass.TEAM, team.to_dict())
        if count_changed:
            self.bus.emit(EntityEventType.UPDATE, EntityClass.TOURNAMENT, tournament.to_dict(), previous)
        return team

    def remove_member(self, caller: AuthUser, team_id: int, user_id: int) -> Optional[Team]:
        """Remove a member; returns None when the team was deleted with its last member."""
        team = self.get_team(caller, team_id)
        tournament = self._tournament(team.tournament_id)
        require(caller.id == user_id or can_manage_event(caller, tournament.event_id),
                "You can only remove yourself from a team")
        self._check_not_started(tournament)

        membership = db.session.get(TeamMember, (team.id, user_id))
        if not membership:
            raise NotFoundError("This user is not a member of this team")

        team_data = team.to_dict()
        previous = tournament.to_dict()
        with transaction() as session:
            session.delete(membership)
            session.flush()
            emptied = TeamMember.query.filter_by(team_id=team.id).count() == 0
            if emptied:
                session.delete(team)
            count_changed = recount_teams(tournament)

        if emptied:
            logger.info(f"User {user_id} left team {team_id}, team deleted")
            self.bus.emit(EntityEventType.DELETE, EntityClass.TEAM, team_data)
        else:
            logger.info(f"User {user_id} left team {team_id}")
            self.bus.emit(EntityEventType.UPDATE, EntityClass.TEAM, team.to_dict())
        if count_changed:
            self.bus.emit(EntityEventType.UPDATE, EntityClass.TOURNAMENT, tournament.to_dict(), previous)
        return None if emptied else team

    def update_team(self, caller: AuthUser, team_id: int, patch: TeamPatch) -> Team:
        team = self.get_team(caller, team_id)
        tournament = self._tournament(team.tournament_id)
        require(can_manage_event(caller, tournament.event_id) or caller.id in self._member_ids(team),
                "Only organizers and members can edit a team")
        self._check_not_started(tournament)

        changes = patch.changes()
        if 'name' in changes and changes['name'] is None:
            raise ValidationError("name cannot be null")
        if not changes:
            return team

        previous = team.to_dict()
        with transaction():
            team.name = changes['name']

        self.bus.emit(EntityEventType.UPDATE, EntityClass.TEAM, team.to_dict(), previous)
        return team

    def delete_team(self, caller: AuthUser, team_id: int):
        team = self.get_team(caller, team_id)
        tournament = self._tournament(team.tournament_id)
        require(can_manage_event(caller, tournament.event_id) or caller.id in self._member_ids(team),
                "Only organizers and members can delete a team")
        self._check_not_started(tournament)

        team_data = team.to_dict()
        previous = tournament.to_dict()
        with transaction() as session:
            TeamMember.query.filter_by(team_id=team.id).delete()
            session.delete(team)
            count_changed = recount_teams(tournament)

        logger.info(f"Deleted team {team_id} from tournament {tournament.id}")
        self.bus.emit(EntityEventType.DELETE, EntityClass.TEAM, team_data)
        if count_changed:
            self.bus.emit(EntityEventType.UPDATE, EntityClass.TOURNAMENT, tournament.to_dict(), previous)

    # ==================== Serialization ====================

    def serialize_member(self, registration: Registration) -> dict:
        data = registration.to_dict()
        user = db.session.get(User, registration.user_id)
        data['user'] = user.to_dict() if user else None
        return data

    def serialize(self, team: Team, relations=()) -> dict:
        data = team.to_dict()
        if 'tournament' in relations:
            data['tournament'] = self._tournament(team.tournament_id).to_dict()
        if 'members' in relations:
            event_id = self._tournament(team.tournament_id).event_id
            data['members'] = [
                self.serialize_member(db.session.get(Registration, (user_id, event_id)))
                for user_id in self._member_ids(team)
            ]
        return data
