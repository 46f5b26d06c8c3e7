from flask import Blueprint, current_app, jsonify, request

from frilan.auth import admin_required, current_user, login_required
from frilan.models import User
from frilan.query import parse_filters, parse_relations
from frilan.schemas import UserCreate, UserPatch, request_payload

bp = Blueprint('users', __name__)


@bp.route('/users', methods=['POST'])
def create_user():
    """Public sign-up."""
    user = current_app.users.create_user(request_payload(UserCreate))
    return jsonify({'message': 'User created', 'user': user.to_dict()}), 201


@bp.route('/users', methods=['GET'])
@login_required
def list_users():
    relations = parse_relations(request.args, current_app.users.RELATIONS)
    users = current_app.users.list_users(parse_filters(request.args, User))
    return jsonify({
        'users': [current_app.users.serialize(u, relations) for u in users],
        'count': len(users)
    })


@bp.route('/users/<int:user_id>', methods=['GET'])
@login_required
def get_user(user_id: int):
    relations = parse_relations(request.args, current_app.users.RELATIONS)
    user = current_app.users.get_user(user_id)
    return jsonify(current_app.users.serialize(user, relations))


@bp.route('/users/<int:user_id>', methods=['PATCH'])
@login_required
def update_user(user_id: int):
    user = current_app.users.update_user(current_user(), user_id, request_payload(UserPatch))
    return jsonify({'message': 'User updated', 'user': user.to_dict()})


@bp.route('/users/<int:user_id>', methods=['DELETE'])
@admin_required
def delete_user(user_id: int):
    current_app.users.delete_user(current_user(), user_id)
    return jsonify({'message': 'User deleted'})
