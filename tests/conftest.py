"""
Pytest configuration and fixtures for FriLAN API tests.
"""
import os
import sys
from datetime import datetime
from types import SimpleNamespace

import pytest

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

# Set testing environment before importing app
os.environ['FLASK_ENV'] = 'testing'

from frilan.app import create_app
from frilan.auth import AuthUser, issue_token
from frilan.models import db, Event, Registration, Role, Team, TeamMember, Tournament, User


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app('testing')

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Empty every table before each test."""
    db.session.remove()
    for table in reversed(db.metadata.sorted_tables):
        db.session.execute(table.delete())
    db.session.commit()

    yield db.session

    db.session.rollback()


# ==================== Entity helpers ====================

def make_user(username: str, admin: bool = False, password: str = 'password') -> User:
    user = User(username=username, display_name=username.capitalize(), admin=admin)
    user.set_password(password)
    db.session.add(user)
    db.session.commit()
    return user


def register(user: User, event: Event, role: str = Role.PLAYER) -> Registration:
    registration = Registration(user_id=user.id, event_id=event.id, role=role)
    db.session.add(registration)
    db.session.commit()
    return registration


def make_team(tournament: Tournament, name: str, members=()) -> Team:
    """Insert a team directly, bypassing the team manager checks."""
    team = Team(tournament_id=tournament.id, name=name)
    db.session.add(team)
    db.session.flush()
    for user in members:
        db.session.add(TeamMember(
            team_id=team.id,
            user_id=user.id,
            event_id=tournament.event_id,
            tournament_id=tournament.id,
        ))
    db.session.commit()
    return team


def caller_for(user: User) -> AuthUser:
    roles = {r.event_id: r.role for r in Registration.query.filter_by(user_id=user.id).all()}
    return AuthUser(id=user.id, admin=user.admin, roles=roles)


def auth_header(app, user: User) -> dict:
    token = issue_token(caller_for(user), app.config['JWT_SECRET'], algorithm=app.config['JWT_ALGORITHM'])
    return {'Authorization': f'Bearer {token}'}


# ==================== Fixtures ====================

@pytest.fixture
def admin(db_session):
    return make_user('admin', admin=True)


@pytest.fixture
def sample_event(db_session):
    event = Event(
        name='FriLAN 2024',
        short_name='frilan24',
        start=datetime(2024, 3, 1, 18, 0),
        end=datetime(2024, 3, 3, 18, 0)
    )
    db.session.add(event)
    db.session.commit()
    return event


@pytest.fixture
def organizer(sample_event):
    user = make_user('organizer')
    register(user, sample_event, Role.ORGANIZER)
    return user


@pytest.fixture
def players(sample_event):
    """Six players registered to the sample event."""
    users = [make_user(f'player{i + 1}') for i in range(6)]
    for user in users:
        register(user, sample_event)
    return users


@pytest.fixture
def sample_tournament(sample_event):
    """Hidden 2v2 tournament accepting 2 to 4 teams."""
    tournament = Tournament(
        event_id=sample_event.id,
        name='Rocket League',
        short_name='rl',
        date=datetime(2024, 3, 2, 14, 0),
        duration=120,
        team_size_min=2,
        team_size_max=2,
        team_count_min=2,
        team_count_max=4,
        status='hidden'
    )
    db.session.add(tournament)
    db.session.commit()
    return tournament


@pytest.fixture
def mock_bus(app, mocker):
    """Spy on every event emitted during the test."""
    return mocker.spy(app.bus, 'emit')


@pytest.fixture
def factory(app, db_session):
    """Entity helpers for tests that need more than the sample fixtures."""
    return SimpleNamespace(
        user=make_user,
        register=register,
        team=make_team,
        caller=caller_for,
        headers=lambda user: auth_header(app, user),
    )
