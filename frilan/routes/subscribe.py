import logging
import queue

from flask import Blueprint, Response, current_app, request

from frilan.auth import login_required
from frilan.errors import NotFoundError, ValidationError
from shared.events import EntityClass, EntityEvent, EntityEventType, matches_filters

logger = logging.getLogger(__name__)

bp = Blueprint('subscribe', __name__)


def _subscription_filters(args) -> dict:
    filters = {}
    for key in args.keys():
        if key == 'event':
            continue
        values = [v.strip() for value in args.getlist(key) for v in value.split(',') if v.strip()]
        if values:
            filters[key] = values
    return filters


@bp.route('/subscribe/<entities>')
@login_required
def subscribe(entities: str):
    """
    SSE stream of changes to one entity class, e.g. ``/subscribe/teams``.

    ``?event=create|update|delete`` narrows the event type, every other query
    parameter filters on an entity field (``?tournament_id=3``,
    ``?user.username=bob``).
    """
    cls = EntityClass.from_plural(entities)
    if cls is None:
        raise NotFoundError(f"Unknown entity class '{entities}'")

    try:
        event_type = EntityEventType(request.args.get('event', EntityEventType.ANY.value))
    except ValueError:
        raise ValidationError(f"Unknown event type '{request.args.get('event')}'")

    filters = _subscription_filters(request.args)
    keepalive = current_app.config['SSE_KEEPALIVE']
    bus = current_app.bus

    def generate():
        messages = queue.Queue()

        def listener(event: EntityEvent):
            if matches_filters(event.entity, filters, event.previous):
                messages.put(event.to_sse())

        bus.add_listener(event_type, cls, listener)
        logger.debug(f"Subscriber attached to {event_type.value} {cls.value}")
        try:
            yield ": connected\n\n"
            while True:
                try:
                    yield messages.get(timeout=keepalive)
                except queue.Empty:
                    yield ": keepalive\n\n"
        finally:
            bus.remove_listener(event_type, cls, listener)
            logger.debug(f"Subscriber detached from {event_type.value} {cls.value}")

    return Response(generate(), mimetype='text/event-stream', headers={
        'Cache-Control': 'no-cache',
        'X-Accel-Buffering': 'no'
    })
