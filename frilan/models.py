from contextlib import contextmanager
from datetime import datetime
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy.exc import IntegrityError
from werkzeug.security import generate_password_hash, check_password_hash

from .errors import ConflictError

db = SQLAlchemy()


@contextmanager
def transaction(conflict_message: str = None):
    """
    Commit everything done in the block at once, or nothing.

    Unique violations surface as ConflictError; any other failure rolls the
    session back and propagates.
    """
    try:
        yield db.session
        db.session.commit()
    except IntegrityError as e:
        db.session.rollback()
        raise ConflictError(conflict_message) from e
    except Exception:
        db.session.rollback()
        raise


def isoformat(value: datetime):
    return value.isoformat() if value else None


class Role:
    ORGANIZER = 'organizer'
    PLAYER = 'player'

    ALL = (ORGANIZER, PLAYER)


class User(db.Model):
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(100), unique=True, nullable=False)
    display_name = db.Column(db.String(100), nullable=False)
    password_hash = db.Column(db.String(256), nullable=False)
    admin = db.Column(db.Boolean, nullable=False, default=False)
    profile_picture = db.Column(db.String(500), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    __table_args__ = (
        db.Index('username_index', db.func.lower(username), unique=True),
    )

    def set_password(self, password: str):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        if not self.password_hash:
            return False
        return check_password_hash(self.password_hash, password)

    def to_dict(self):
        return {
            'id': self.id,
            'username': self.username,
            'display_name': self.display_name,
            'profile_picture': self.profile_picture,
            'admin': self.admin,
        }


class Event(db.Model):
    __tablename__ = 'events'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    short_name = db.Column(db.String(50), unique=True, nullable=False, index=True)
    start = db.Column(db.DateTime, nullable=False)
    end = db.Column(db.DateTime, nullable=False)

    def contains(self, moment: datetime) -> bool:
        """Strictly between start and end."""
        return self.start < moment < self.end

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'short_name': self.short_name,
            'start': isoformat(self.start),
            'end': isoformat(self.end),
        }


class Registration(db.Model):
    __tablename__ = 'registrations'

    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), primary_key=True)
    event_id = db.Column(db.Integer, db.ForeignKey('events.id'), primary_key=True)
    role = db.Column(db.String(20), nullable=False, default=Role.PLAYER)
    arrival = db.Column(db.DateTime, nullable=True)
    departure = db.Column(db.DateTime, nullable=True)
    score = db.Column(db.Integer, nullable=False, default=0)

    def to_dict(self):
        return {
            'user_id': self.user_id,
            'event_id': self.event_id,
            'role': self.role,
            'arrival': isoformat(self.arrival),
            'departure': isoformat(self.departure),
            'score': self.score,
        }

    def to_event_dict(self):
        """Payload broadcast to subscribers, with the user embedded for ``user.*`` filters."""
        data = self.to_dict()
        user = db.session.get(User, self.user_id)
        data['user'] = user.to_dict() if user else None
        return data


class Tournament(db.Model):
    __tablename__ = 'tournaments'

    id = db.Column(db.Integer, primary_key=True)
    event_id = db.Column(db.Integer, db.ForeignKey('events.id'), nullable=False, index=True)
    name = db.Column(db.String(200), nullable=False)
    short_name = db.Column(db.String(50), nullable=False)
    date = db.Column(db.DateTime, nullable=False)
    duration = db.Column(db.Integer, nullable=False)
    rules = db.Column(db.Text, nullable=False, default='')
    background = db.Column(db.String(500), nullable=True)

    team_size_min = db.Column(db.Integer, nullable=False)
    team_size_max = db.Column(db.Integer, nullable=False)
    team_count_min = db.Column(db.Integer, nullable=False)
    team_count_max = db.Column(db.Integer, nullable=False)

    # Number of complete teams, maintained by the team manager
    team_count = db.Column(db.Integer, nullable=False, default=0)

    status = db.Column(db.String(20), nullable=False, default='hidden')
    points_per_player = db.Column(db.Integer, nullable=False, default=100)
    points_distribution = db.Column(db.String(20), nullable=False, default='exponential')

    __table_args__ = (
        db.UniqueConstraint('event_id', 'short_name', name='locator'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'event_id': self.event_id,
            'name': self.name,
            'short_name': self.short_name,
            'date': isoformat(self.date),
            'duration': self.duration,
            'rules': self.rules,
            'background': self.background,
            'team_size_min': self.team_size_min,
            'team_size_max': self.team_size_max,
            'team_count_min': self.team_count_min,
            'team_count_max': self.team_count_max,
            'team_count': self.team_count,
            'status': self.status,
            'points_per_player': self.points_per_player,
            'points_distribution': self.points_distribution,
        }


class Team(db.Model):
    __tablename__ = 'teams'

    id = db.Column(db.Integer, primary_key=True)
    tournament_id = db.Column(db.Integer, db.ForeignKey('tournaments.id'), nullable=False, index=True)
    name = db.Column(db.String(100), nullable=False)
    result = db.Column(db.Integer, nullable=False, default=0)
    rank = db.Column(db.Integer, nullable=False, default=0)

    def to_dict(self):
        return {
            'id': self.id,
            'tournament_id': self.tournament_id,
            'name': self.name,
            'result': self.result,
            'rank': self.rank,
        }


class TeamMember(db.Model):
    """A registration belonging to a team."""
    __tablename__ = 'team_members'

    team_id = db.Column(db.Integer, db.ForeignKey('teams.id'), primary_key=True)
    user_id = db.Column(db.Integer, primary_key=True)
    event_id = db.Column(db.Integer, nullable=False)
    tournament_id = db.Column(db.Integer, db.ForeignKey('tournaments.id'), nullable=False)

    __table_args__ = (
        db.ForeignKeyConstraint(
            ['user_id', 'event_id'],
            ['registrations.user_id', 'registrations.event_id']
        ),
        db.UniqueConstraint('tournament_id', 'user_id', name='one_team_per_tournament'),
    )
