"""Query-string filters and relation loading for list endpoints."""
from datetime import datetime
from typing import Dict, Iterable, List

from .errors import ValidationError

LOAD_PARAM = 'load'


def _split(values: Iterable[str]) -> List[str]:
    items = []
    for value in values:
        items.extend(v.strip() for v in value.split(',') if v.strip())
    return items


def _coerce(column, value: str):
    try:
        python_type = column.type.python_type
    except NotImplementedError:
        return value

    try:
        if python_type is bool:
            if value.lower() not in ('true', 'false', '1', '0'):
                raise ValueError(value)
            return value.lower() in ('true', '1')
        if python_type is int:
            return int(value)
        if python_type is datetime:
            return datetime.fromisoformat(value)
    except ValueError:
        raise ValidationError(f"Invalid value '{value}' for filter '{column.key}'")
    return value


def parse_filters(args, model, ignore: Iterable[str] = ()) -> Dict[str, list]:
    """
    Turn query arguments into ``{column: [accepted values]}``.

    Values may be repeated (``?role=a&role=b``) or comma separated
    (``?role=a,b``). Unknown columns are rejected.
    """
    columns = model.__table__.columns
    skip = {LOAD_PARAM, *ignore}
    filters = {}

    for key in args.keys():
        if key in skip:
            continue
        if key not in columns or key == 'password_hash':
            raise ValidationError(f"Cannot filter on unknown field '{key}'")
        values = _split(args.getlist(key))
        if not values:
            continue
        filters[key] = [_coerce(columns[key], v) for v in values]

    return filters


def apply_filters(query, model, filters: Dict[str, list]):
    for key, values in filters.items():
        query = query.filter(getattr(model, key).in_(values))
    return query


def parse_relations(args, allowed: Iterable[str]) -> List[str]:
    relations = _split(args.getlist(LOAD_PARAM))
    allowed = set(allowed)
    unknown = [r for r in relations if r not in allowed]
    if unknown:
        raise ValidationError(f"Cannot load unknown relation '{unknown[0]}'")
    return relations
