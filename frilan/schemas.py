"""
Request payloads.

Create payloads are complete models. Patch payloads have every field
optional; ``model_fields_set`` tells which fields the client actually sent,
so an absent field is left untouched while an explicit ``null`` clears it.
Server-controlled fields (score, result, rank, team_count) are not declared
and are therefore ignored when supplied.
"""
from datetime import datetime, timezone
from typing import List, Literal, Optional, Union

from flask import request
from pydantic import (
    BaseModel, ConfigDict, Field, PositiveInt, StrictInt, ValidationError as PydanticValidationError,
    field_validator, model_validator,
)

from shared.state_machine import TournamentStatus
from .errors import ValidationError
from .points_distribution import PointsDistribution


class Payload(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, extra='ignore')

    @field_validator('*', mode='after')
    @classmethod
    def naive_utc(cls, value):
        # stored datetimes are naive UTC
        if isinstance(value, datetime) and value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def changes(self) -> dict:
        """Fields explicitly supplied by the client."""
        return self.model_dump(exclude_unset=True)


# ==================== Users ====================

class UserCreate(Payload):
    username: str = Field(min_length=1, max_length=100)
    display_name: str = Field(min_length=1, max_length=100)
    password: str = Field(min_length=1)
    profile_picture: Optional[str] = None


class UserPatch(Payload):
    username: Optional[str] = Field(default=None, min_length=1, max_length=100)
    display_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    password: Optional[str] = Field(default=None, min_length=1)
    profile_picture: Optional[str] = None
    admin: Optional[bool] = None


# ==================== Events ====================

class EventCreate(Payload):
    name: str = Field(min_length=1, max_length=200)
    short_name: str = Field(min_length=1, max_length=50)
    start: datetime
    end: datetime

    @model_validator(mode='after')
    def check_dates(self):
        if self.end < self.start:
            raise ValueError('end must not be before start')
        return self


class EventPatch(Payload):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    short_name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    start: Optional[datetime] = None
    end: Optional[datetime] = None


# ==================== Registrations ====================

class RegistrationPatch(Payload):
    role: Optional[Literal['organizer', 'player']] = None
    arrival: Optional[datetime] = None
    departure: Optional[datetime] = None


# ==================== Tournaments ====================

class TournamentCreate(Payload):
    name: str = Field(min_length=1, max_length=200)
    short_name: str = Field(min_length=1, max_length=50)
    date: datetime
    duration: int = Field(ge=0)
    rules: str = ''
    background: Optional[str] = None
    team_size_min: int = Field(ge=1)
    team_size_max: int = Field(ge=1)
    team_count_min: int = Field(ge=2)
    team_count_max: int = Field(ge=2)
    status: TournamentStatus = TournamentStatus.HIDDEN

    @model_validator(mode='after')
    def check_bounds(self):
        if self.team_size_max < self.team_size_min:
            raise ValueError('team_size_max must be greater than or equal to team_size_min')
        if self.team_count_max < self.team_count_min:
            raise ValueError('team_count_max must be greater than or equal to team_count_min')
        return self


class TournamentPatch(Payload):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    short_name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    date: Optional[datetime] = None
    duration: Optional[int] = Field(default=None, ge=0)
    rules: Optional[str] = None
    background: Optional[str] = None
    team_size_min: Optional[int] = Field(default=None, ge=1)
    team_size_max: Optional[int] = Field(default=None, ge=1)
    team_count_min: Optional[int] = Field(default=None, ge=2)
    team_count_max: Optional[int] = Field(default=None, ge=2)
    status: Optional[TournamentStatus] = None


# ==================== Teams ====================

class TeamCreate(Payload):
    name: str = Field(min_length=1, max_length=100)
    # user IDs of registrations to add, organizers only
    members: Optional[List[StrictInt]] = None


class TeamPatch(Payload):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)


class Ranking(Payload):
    ranks: List[Union[StrictInt, List[StrictInt]]]
    desc_order: bool = False
    points: PositiveInt
    distribution: PointsDistribution = PointsDistribution.EXPONENTIAL

    @field_validator('ranks')
    @classmethod
    def no_empty_groups(cls, ranks):
        if any(isinstance(group, list) and not group for group in ranks):
            raise ValueError('tied groups must contain at least one team ID')
        return ranks

    def groups(self) -> List[List[int]]:
        """Rank groups from best to worst, single IDs wrapped in lists."""
        groups = [group if isinstance(group, list) else [group] for group in self.ranks]
        if self.desc_order:
            groups.reverse()
        return groups


def parse_payload(schema, data):
    """Validate a JSON body against ``schema``, raising our ValidationError."""
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")

    try:
        return schema.model_validate(data)
    except PydanticValidationError as e:
        details = [
            {'field': '.'.join(str(p) for p in err['loc']), 'message': err['msg']}
            for err in e.errors()
        ]
        summary = '; '.join(f"{d['field'] or 'body'}: {d['message']}" for d in details)
        raise ValidationError(summary, details={'fields': details})


def request_payload(schema):
    """Validate the JSON body of the current request."""
    data = request.get_json(silent=True)
    if data is None and request.get_data():
        raise ValidationError("Request body is not valid JSON")
    return parse_payload(schema, data)
