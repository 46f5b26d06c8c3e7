"""
Unit tests for TournamentRegistry class.
Tests: create_tournament, get_tournament, list_tournaments, update_tournament,
       delete_tournament, end_tournament
"""
from datetime import datetime

import pytest

from frilan.errors import (
    ConflictError, ForbiddenError, StateError, TournamentNotFoundError, TournamentStartedError,
    ValidationError,
)
from frilan.models import db, Registration, Team, TeamMember
from frilan.points_distribution import distribute_exp
from frilan.schemas import Ranking, TournamentCreate, TournamentPatch
from shared.events import EntityClass, EntityEventType
from shared.state_machine import TransitionError


def tournament_payload(**overrides):
    data = dict(
        name='Counter-Strike',
        short_name='cs',
        date=datetime(2024, 3, 2, 10, 0),
        duration=240,
        team_size_min=1,
        team_size_max=5,
        team_count_min=2,
        team_count_max=8,
    )
    data.update(overrides)
    return TournamentCreate(**data)


def score(user, event_id):
    return Registration.query.filter_by(user_id=user.id, event_id=event_id).one().score


@pytest.fixture
def started_tournament(sample_tournament, players, factory):
    """Started tournament with three complete 2-player teams."""
    teams = [
        factory.team(sample_tournament, 'Alpha', players[0:2]),
        factory.team(sample_tournament, 'Bravo', players[2:4]),
        factory.team(sample_tournament, 'Charlie', players[4:6]),
    ]
    sample_tournament.team_count = 3
    sample_tournament.status = 'started'
    db.session.commit()
    return sample_tournament, teams


class TestCreateTournament:
    """Tests for create_tournament method."""

    def test_create_defaults(self, app, organizer, sample_event, factory):
        """Should create a hidden tournament with default scoring."""
        tournament = app.tournaments.create_tournament(
            factory.caller(organizer), sample_event.id, tournament_payload()
        )

        assert tournament.status == 'hidden'
        assert tournament.team_count == 0
        assert tournament.rules == ''
        assert tournament.points_per_player == 100
        assert tournament.points_distribution == 'exponential'

    def test_create_ready(self, app, organizer, sample_event, factory):
        tournament = app.tournaments.create_tournament(
            factory.caller(organizer), sample_event.id, tournament_payload(status='ready')
        )
        assert tournament.status == 'ready'

    def test_cannot_create_started(self, app, organizer, sample_event, factory):
        with pytest.raises(TransitionError):
            app.tournaments.create_tournament(
                factory.caller(organizer), sample_event.id, tournament_payload(status='started')
            )

    def test_date_outside_event(self, app, organizer, sample_event, factory):
        with pytest.raises(ValidationError):
            app.tournaments.create_tournament(
                factory.caller(organizer), sample_event.id, tournament_payload(date=datetime(2024, 4, 1))
            )

    def test_date_on_event_boundary(self, app, organizer, sample_event, factory):
        """The date must be strictly inside the event."""
        with pytest.raises(ValidationError):
            app.tournaments.create_tournament(
                factory.caller(organizer), sample_event.id, tournament_payload(date=sample_event.start)
            )

    def test_short_name_unique_per_event(self, app, organizer, sample_event, factory):
        caller = factory.caller(organizer)
        app.tournaments.create_tournament(caller, sample_event.id, tournament_payload())
        with pytest.raises(ConflictError):
            app.tournaments.create_tournament(caller, sample_event.id, tournament_payload(name='Other'))

    def test_players_cannot_create(self, app, players, sample_event, factory):
        with pytest.raises(ForbiddenError):
            app.tournaments.create_tournament(factory.caller(players[0]), sample_event.id, tournament_payload())

    def test_emits_create(self, app, organizer, sample_event, factory, mock_bus):
        tournament = app.tournaments.create_tournament(
            factory.caller(organizer), sample_event.id, tournament_payload()
        )
        mock_bus.assert_called_once_with(EntityEventType.CREATE, EntityClass.TOURNAMENT, tournament.to_dict())


class TestVisibility:
    """Tests for get_tournament and list_tournaments."""

    def test_hidden_invisible_to_players(self, app, players, sample_tournament, factory):
        with pytest.raises(TournamentNotFoundError):
            app.tournaments.get_tournament(factory.caller(players[0]), sample_tournament.id)
        assert app.tournaments.list_tournaments(factory.caller(players[0]), sample_tournament.event_id) == []

    def test_hidden_visible_to_organizers(self, app, organizer, sample_tournament, factory):
        caller = factory.caller(organizer)
        assert app.tournaments.get_tournament(caller, sample_tournament.id).id == sample_tournament.id
        assert len(app.tournaments.list_tournaments(caller, sample_tournament.event_id)) == 1

    def test_ready_visible_to_players(self, app, players, sample_tournament, factory):
        sample_tournament.status = 'ready'
        caller = factory.caller(players[0])
        assert app.tournaments.get_tournament(caller, sample_tournament.id).id == sample_tournament.id

    def test_unregistered_forbidden(self, app, sample_tournament, factory):
        outsider = factory.user('outsider')
        with pytest.raises(ForbiddenError):
            app.tournaments.get_tournament(factory.caller(outsider), sample_tournament.id)


class TestUpdateTournament:
    """Tests for update_tournament method, status changes included."""

    def test_rename(self, app, organizer, sample_tournament, factory):
        tournament = app.tournaments.update_tournament(
            factory.caller(organizer), sample_tournament.id, TournamentPatch(name='RL 2v2')
        )
        assert tournament.name == 'RL 2v2'
        assert tournament.short_name == 'rl'

    def test_publish(self, app, organizer, players, sample_tournament, factory):
        factory.team(sample_tournament, 'A', players[0:2])
        factory.team(sample_tournament, 'B', players[2:4])

        tournament = app.tournaments.update_tournament(
            factory.caller(organizer), sample_tournament.id, TournamentPatch(status='ready')
        )
        assert tournament.status == 'ready'
        assert tournament.team_count == 2

    def test_publish_requires_enough_teams(self, app, organizer, players, sample_tournament, factory):
        """A tournament only becomes ready with team_count_min complete teams."""
        factory.team(sample_tournament, 'A', players[0:2])
        factory.team(sample_tournament, 'B', players[2:3])

        with pytest.raises(StateError, match="at least 2"):
            app.tournaments.update_tournament(
                factory.caller(organizer), sample_tournament.id, TournamentPatch(status='ready')
            )
        assert sample_tournament.status == 'hidden'

    def test_hidden_to_started_rejected(self, app, organizer, players, sample_tournament, factory):
        factory.team(sample_tournament, 'A', players[0:2])
        factory.team(sample_tournament, 'B', players[2:4])

        with pytest.raises(TransitionError):
            app.tournaments.update_tournament(
                factory.caller(organizer), sample_tournament.id, TournamentPatch(status='started')
            )
        assert sample_tournament.status == 'hidden'

    def test_start_requires_enough_teams(self, app, organizer, players, sample_tournament, factory):
        factory.team(sample_tournament, 'A', players[0:2])
        sample_tournament.status = 'ready'
        db.session.commit()

        with pytest.raises(TransitionError):
            app.tournaments.update_tournament(
                factory.caller(organizer), sample_tournament.id, TournamentPatch(status='started')
            )
        assert sample_tournament.status == 'ready'

    def test_start_drops_incomplete_teams(self, app, organizer, players, sample_tournament, factory):
        """Starting keeps complete teams only."""
        complete = [
            factory.team(sample_tournament, 'A', players[0:2]),
            factory.team(sample_tournament, 'B', players[2:4]),
        ]
        incomplete_id = factory.team(sample_tournament, 'C', players[4:5]).id
        sample_tournament.status = 'ready'
        db.session.commit()

        tournament = app.tournaments.update_tournament(
            factory.caller(organizer), sample_tournament.id, TournamentPatch(status='started')
        )

        assert tournament.status == 'started'
        assert tournament.team_count == 2
        remaining = {t.id for t in Team.query.filter_by(tournament_id=tournament.id)}
        assert remaining == {t.id for t in complete}
        assert incomplete_id not in remaining
        assert TeamMember.query.filter_by(user_id=players[4].id).count() == 0

    def test_started_to_hidden_rejected(self, app, organizer, started_tournament, factory):
        tournament, _ = started_tournament
        with pytest.raises(TransitionError):
            app.tournaments.update_tournament(
                factory.caller(organizer), tournament.id, TournamentPatch(status='hidden')
            )

    def test_cannot_set_finished(self, app, organizer, started_tournament, factory):
        tournament, _ = started_tournament
        with pytest.raises(TransitionError):
            app.tournaments.update_tournament(
                factory.caller(organizer), tournament.id, TournamentPatch(status='finished')
            )

    def test_schedule_frozen_after_start(self, app, organizer, started_tournament, factory):
        tournament, _ = started_tournament
        with pytest.raises(TournamentStartedError):
            app.tournaments.update_tournament(
                factory.caller(organizer), tournament.id, TournamentPatch(team_size_max=3)
            )

    def test_rules_editable_after_start(self, app, organizer, started_tournament, factory):
        tournament, _ = started_tournament
        app.tournaments.update_tournament(
            factory.caller(organizer), tournament.id, TournamentPatch(rules='Best of 3')
        )
        assert tournament.rules == 'Best of 3'

    def test_size_change_recounts_teams(self, app, organizer, players, sample_tournament, factory):
        """team_count follows the size bounds."""
        factory.team(sample_tournament, 'A', players[0:2])
        factory.team(sample_tournament, 'B', players[2:3])

        tournament = app.tournaments.update_tournament(
            factory.caller(organizer), sample_tournament.id, TournamentPatch(team_size_min=1)
        )
        assert tournament.team_count == 2

    def test_invalid_bounds(self, app, organizer, sample_tournament, factory):
        with pytest.raises(ValidationError):
            app.tournaments.update_tournament(
                factory.caller(organizer), sample_tournament.id, TournamentPatch(team_count_max=2, team_count_min=3)
            )

    def test_required_field_cannot_be_null(self, app, organizer, sample_tournament, factory):
        with pytest.raises(ValidationError):
            app.tournaments.update_tournament(
                factory.caller(organizer), sample_tournament.id, TournamentPatch(name=None)
            )


class TestDeleteTournament:
    """Tests for delete_tournament method."""

    def test_delete_with_teams(self, app, organizer, players, sample_tournament, factory):
        factory.team(sample_tournament, 'A', players[0:2])
        app.tournaments.delete_tournament(factory.caller(organizer), sample_tournament.id)

        assert Team.query.count() == 0
        assert TeamMember.query.count() == 0
        with pytest.raises(TournamentNotFoundError):
            app.tournaments.get_tournament(factory.caller(organizer), sample_tournament.id)

    def test_cannot_delete_started(self, app, organizer, started_tournament, factory):
        tournament, _ = started_tournament
        with pytest.raises(TournamentStartedError):
            app.tournaments.delete_tournament(factory.caller(organizer), tournament.id)


class TestEndTournament:
    """Tests for end_tournament method."""

    def test_two_teams(self, app, organizer, players, sample_tournament, factory):
        """Ranking [B, A] gives B the higher score."""
        a = factory.team(sample_tournament, 'A', players[0:2])
        b = factory.team(sample_tournament, 'B', players[2:4])
        sample_tournament.status = 'started'
        event_id = sample_tournament.event_id

        app.tournaments.end_tournament(
            factory.caller(organizer), sample_tournament.id, Ranking(ranks=[b.id, a.id], points=100)
        )

        assert b.result == distribute_exp(1, 1, 2, 100)
        assert a.result == distribute_exp(2, 1, 2, 100)
        assert (b.rank, a.rank) == (1, 2)
        assert score(players[2], event_id) == score(players[3], event_id) == b.result
        assert score(players[0], event_id) == a.result
        assert score(players[2], event_id) > score(players[0], event_id)
        assert sample_tournament.status == 'finished'

    def test_tie_for_first(self, app, organizer, players, sample_tournament, factory):
        """Tied teams receive the same award."""
        x = factory.team(sample_tournament, 'X', players[0:2])
        y = factory.team(sample_tournament, 'Y', players[2:4])
        sample_tournament.status = 'started'

        app.tournaments.end_tournament(
            factory.caller(organizer), sample_tournament.id, Ranking(ranks=[[x.id, y.id]], points=50)
        )

        assert x.result == y.result == distribute_exp(1, 2, 2, 50)
        assert x.rank == y.rank == 1

    def test_true_rank_skips_tied_places(self, app, organizer, started_tournament, factory):
        """A team after a 2-way tie for first ranks third."""
        tournament, (alpha, bravo, charlie) = started_tournament
        app.tournaments.end_tournament(
            factory.caller(organizer), tournament.id, Ranking(ranks=[[alpha.id, bravo.id], charlie.id], points=100)
        )

        assert charlie.rank == 3
        assert charlie.result == distribute_exp(3, 1, 3, 100)

    def test_desc_order(self, app, organizer, started_tournament, factory):
        """With desc_order the last listed team is the winner."""
        tournament, (alpha, bravo, charlie) = started_tournament
        app.tournaments.end_tournament(
            factory.caller(organizer), tournament.id,
            Ranking(ranks=[alpha.id, bravo.id, charlie.id], points=100, desc_order=True)
        )

        assert (charlie.rank, bravo.rank, alpha.rank) == (1, 2, 3)
        assert charlie.result > bravo.result > alpha.result

    def test_end_twice_no_double_count(self, app, organizer, players, started_tournament, factory):
        """Scores reflect only the latest ranking."""
        tournament, (alpha, bravo, charlie) = started_tournament
        caller = factory.caller(organizer)

        app.tournaments.end_tournament(caller, tournament.id, Ranking(ranks=[alpha.id, bravo.id, charlie.id], points=100))
        app.tournaments.end_tournament(caller, tournament.id, Ranking(ranks=[charlie.id, bravo.id, alpha.id], points=100))

        event_id = tournament.event_id
        assert score(players[4], event_id) == distribute_exp(1, 1, 3, 100)
        assert score(players[2], event_id) == distribute_exp(2, 1, 3, 100)
        assert score(players[0], event_id) == distribute_exp(3, 1, 3, 100)
        assert tournament.status == 'finished'

    def test_scores_accumulate_across_tournaments(self, app, organizer, players, started_tournament, factory):
        tournament, (alpha, bravo, charlie) = started_tournament
        registration = Registration.query.filter_by(user_id=players[0].id).one()
        registration.score = 10

        app.tournaments.end_tournament(
            factory.caller(organizer), tournament.id, Ranking(ranks=[alpha.id, bravo.id, charlie.id], points=100)
        )

        assert registration.score == 10 + distribute_exp(1, 1, 3, 100)

    def test_stores_points_settings(self, app, organizer, started_tournament, factory):
        tournament, teams = started_tournament
        app.tournaments.end_tournament(
            factory.caller(organizer), tournament.id, Ranking(ranks=[t.id for t in teams], points=250)
        )
        assert tournament.points_per_player == 250
        assert tournament.points_distribution == 'exponential'

    @pytest.mark.parametrize('ranks', [
        lambda a, b, c: [a, b],
        lambda a, b, c: [a, b, c, 999],
        lambda a, b, c: [a, [b, a], c],
    ])
    def test_ranking_must_match_teams(self, app, organizer, players, started_tournament, factory, ranks):
        """Missing, unknown or duplicate teams are rejected without side effects."""
        tournament, (alpha, bravo, charlie) = started_tournament

        with pytest.raises(ValidationError):
            app.tournaments.end_tournament(
                factory.caller(organizer), tournament.id,
                Ranking(ranks=ranks(alpha.id, bravo.id, charlie.id), points=100)
            )

        assert tournament.status == 'started'
        assert alpha.result == 0
        assert score(players[0], tournament.event_id) == 0

    def test_not_started(self, app, organizer, players, sample_tournament, factory):
        a = factory.team(sample_tournament, 'A', players[0:2])
        b = factory.team(sample_tournament, 'B', players[2:4])
        sample_tournament.status = 'ready'

        with pytest.raises(StateError):
            app.tournaments.end_tournament(
                factory.caller(organizer), sample_tournament.id, Ranking(ranks=[a.id, b.id], points=100)
            )

    def test_players_cannot_end(self, app, players, started_tournament, factory):
        tournament, teams = started_tournament
        with pytest.raises(ForbiddenError):
            app.tournaments.end_tournament(
                factory.caller(players[0]), tournament.id, Ranking(ranks=[t.id for t in teams], points=100)
            )
