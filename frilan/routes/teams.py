from flask import Blueprint, current_app, jsonify, request

from frilan.auth import current_user, login_required
from frilan.models import Team
from frilan.query import parse_filters, parse_relations
from frilan.schemas import TeamCreate, TeamPatch, request_payload

bp = Blueprint('teams', __name__)


@bp.route('/tournaments/<int:tournament_id>/teams', methods=['GET'])
@login_required
def list_teams(tournament_id: int):
    manager = current_app.teams
    relations = parse_relations(request.args, manager.RELATIONS)
    teams = manager.list_teams(current_user(), tournament_id, parse_filters(request.args, Team))
    return jsonify({
        'teams': [manager.serialize(t, relations) for t in teams],
        'count': len(teams)
    })


@bp.route('/tournaments/<int:tournament_id>/teams', methods=['POST'])
@login_required
def create_team(tournament_id: int):
    team = current_app.teams.create_team(current_user(), tournament_id, request_payload(TeamCreate))
    return jsonify({
        'message': 'Team created',
        'team': current_app.teams.serialize(team, ('members',))
    }), 201


@bp.route('/teams/<int:team_id>', methods=['GET'])
@login_required
def get_team(team_id: int):
    manager = current_app.teams
    relations = parse_relations(request.args, manager.RELATIONS)
    return jsonify(manager.serialize(manager.get_team(current_user(), team_id), relations))


@bp.route('/teams/<int:team_id>', methods=['PATCH'])
@login_required
def update_team(team_id: int):
    """Rename a team. Results and ranks are only set by ending the tournament."""
    team = current_app.teams.update_team(current_user(), team_id, request_payload(TeamPatch))
    return jsonify({'message': 'Team updated', 'team': team.to_dict()})


@bp.route('/teams/<int:team_id>', methods=['DELETE'])
@login_required
def delete_team(team_id: int):
    current_app.teams.delete_team(current_user(), team_id)
    return jsonify({'message': 'Team deleted'})


@bp.route('/teams/<int:team_id>/members', methods=['GET'])
@login_required
def list_members(team_id: int):
    manager = current_app.teams
    members = manager.list_members(current_user(), team_id)
    return jsonify({
        'members': [manager.serialize_member(r) for r in members],
        'count': len(members)
    })


@bp.route('/teams/<int:team_id>/members/<int:user_id>', methods=['PUT'])
@login_required
def add_member(team_id: int, user_id: int):
    team = current_app.teams.add_member(current_user(), team_id, user_id)
    return jsonify({
        'message': 'Member added',
        'team': current_app.teams.serialize(team, ('members',))
    })


@bp.route('/teams/<int:team_id>/members/<int:user_id>', methods=['DELETE'])
@login_required
def remove_member(team_id: int, user_id: int):
    team = current_app.teams.remove_member(current_user(), team_id, user_id)
    if team is None:
        return jsonify({'message': 'Member removed, team deleted', 'team': None})
    return jsonify({
        'message': 'Member removed',
        'team': current_app.teams.serialize(team, ('members',))
    })
