from flask import Blueprint, current_app, jsonify, request

from frilan.auth import admin_required, can_read_event, current_user, login_required, require
from frilan.models import Event
from frilan.query import parse_filters, parse_relations
from frilan.schemas import EventCreate, EventPatch, request_payload

bp = Blueprint('events', __name__)


@bp.route('/events', methods=['GET'])
@admin_required
def list_events():
    relations = parse_relations(request.args, current_app.events.RELATIONS)
    events = current_app.events.list_events(parse_filters(request.args, Event))
    return jsonify({
        'events': [current_app.events.serialize(current_user(), e, relations) for e in events],
        'count': len(events)
    })


@bp.route('/events', methods=['POST'])
@admin_required
def create_event():
    event = current_app.events.create_event(request_payload(EventCreate))
    return jsonify({'message': 'Event created', 'event': event.to_dict()}), 201


@bp.route('/events/<int:event_id>', methods=['GET'])
@login_required
def get_event(event_id: int):
    """Admins and registered users only."""
    caller = current_user()
    require(can_read_event(caller, event_id), "You are not registered to this event")
    relations = parse_relations(request.args, current_app.events.RELATIONS)
    event = current_app.events.get_event(event_id)
    return jsonify(current_app.events.serialize(caller, event, relations))


@bp.route('/events/<int:event_id>', methods=['PATCH'])
@admin_required
def update_event(event_id: int):
    event = current_app.events.update_event(event_id, request_payload(EventPatch))
    return jsonify({'message': 'Event updated', 'event': event.to_dict()})


@bp.route('/events/<int:event_id>', methods=['DELETE'])
@admin_required
def delete_event(event_id: int):
    current_app.events.delete_event(event_id)
    return jsonify({'message': 'Event deleted'})
