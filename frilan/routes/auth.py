from flask import Blueprint, current_app, jsonify, request

from frilan.auth import issue_token
from frilan.errors import UnauthorizedError

bp = Blueprint('auth', __name__)


@bp.route('/login', methods=['GET'])
def login():
    """Exchange HTTP Basic credentials for an access token."""
    credentials = request.authorization
    if not credentials or not credentials.username:
        raise UnauthorizedError("Basic credentials are required")

    user = current_app.users.authenticate(credentials.username, credentials.password)
    token = issue_token(
        current_app.users.auth_user(user),
        current_app.config['JWT_SECRET'],
        ttl=current_app.config['JWT_TTL'],
        algorithm=current_app.config['JWT_ALGORITHM'],
    )
    return jsonify({'user': user.to_dict(), 'token': token})
