from enum import Enum
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Any, Dict
import json


class EntityEventType(str, Enum):
    ANY = "any"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class EntityClass(str, Enum):
    USER = "user"
    REGISTRATION = "registration"
    EVENT = "event"
    TOURNAMENT = "tournament"
    TEAM = "team"

    @classmethod
    def from_plural(cls, name: str) -> Optional["EntityClass"]:
        """Map a collection name such as 'teams' to its entity class."""
        if not name.endswith("s"):
            return None
        try:
            return cls(name[:-1])
        except ValueError:
            return None


def _json_default(value: Any):
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


@dataclass
class EntityEvent:
    type: EntityEventType
    entity_class: EntityClass
    entity: dict
    previous: Optional[dict] = None

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "entity_class": self.entity_class.value,
            "entity": self.entity,
            "previous": self.previous,
        }

    def to_json(self) -> str:
        return json.dumps(self.entity, default=_json_default)

    def to_sse(self) -> str:
        """Render as a server-sent event message."""
        return f"event: {self.type.value}\ndata: {self.to_json()}\n\n"


def _lookup(entity: Dict[str, Any], key: str) -> Any:
    # one level of nesting, e.g. "user.username"
    if "." in key:
        head, _, tail = key.partition(".")
        nested = entity.get(head)
        if not isinstance(nested, dict):
            return None
        return nested.get(tail)
    return entity.get(key)


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return str(value)


def _entity_matches(entity: Optional[dict], filters: Dict[str, list]) -> bool:
    if not entity:
        return False
    for key, accepted in filters.items():
        value = _lookup(entity, key)
        if value is None or _as_text(value) not in accepted:
            return False
    return True


def matches_filters(entity: dict, filters: Dict[str, list], previous: dict = None) -> bool:
    """
    Check an entity against subscriber filters.

    ``filters`` maps a field name (optionally dotted) to the accepted string
    values. The previous state of the entity is checked as well, so that
    subscribers still learn about an entity leaving their filter.
    """
    if not filters:
        return True
    return _entity_matches(entity, filters) or _entity_matches(previous, filters)
