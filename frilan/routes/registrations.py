from flask import Blueprint, current_app, jsonify, request

from frilan.auth import can_read_event, current_user, login_required, require
from frilan.models import Registration
from frilan.query import parse_filters, parse_relations
from frilan.schemas import RegistrationPatch, request_payload

bp = Blueprint('registrations', __name__)


@bp.route('/events/<int:event_id>/registrations', methods=['GET'])
@login_required
def list_registrations(event_id: int):
    caller = current_user()
    require(can_read_event(caller, event_id), "You are not registered to this event")
    manager = current_app.registrations
    relations = parse_relations(request.args, manager.RELATIONS)
    registrations = manager.list_registrations(event_id, parse_filters(request.args, Registration))
    return jsonify({
        'registrations': [manager.serialize(caller, r, relations) for r in registrations],
        'count': len(registrations)
    })


@bp.route('/events/<int:event_id>/registrations/<int:user_id>', methods=['GET'])
@login_required
def get_registration(event_id: int, user_id: int):
    caller = current_user()
    require(can_read_event(caller, event_id), "You are not registered to this event")
    manager = current_app.registrations
    relations = parse_relations(request.args, manager.RELATIONS)
    registration = manager.get_registration(event_id, user_id)
    return jsonify(manager.serialize(caller, registration, relations))


@bp.route('/events/<int:event_id>/registrations/<int:user_id>', methods=['PUT'])
@login_required
def put_registration(event_id: int, user_id: int):
    """Register a user, or update the supplied fields of their registration."""
    registration, created = current_app.registrations.put_registration(
        current_user(), event_id, user_id, request_payload(RegistrationPatch)
    )
    return jsonify({
        'message': 'Registration created' if created else 'Registration updated',
        'registration': registration.to_dict()
    }), 201 if created else 200


@bp.route('/events/<int:event_id>/registrations/<int:user_id>', methods=['DELETE'])
@login_required
def delete_registration(event_id: int, user_id: int):
    current_app.registrations.delete_registration(current_user(), event_id, user_id)
    return jsonify({'message': 'Registration deleted'})
