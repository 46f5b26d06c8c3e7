from flask import Blueprint, current_app, jsonify, request

from frilan.auth import current_user, login_required
from frilan.models import Tournament
from frilan.query import parse_filters, parse_relations
from frilan.schemas import Ranking, TournamentCreate, TournamentPatch, request_payload

bp = Blueprint('tournaments', __name__)


@bp.route('/events/<int:event_id>/tournaments', methods=['GET'])
@login_required
def list_tournaments(event_id: int):
    """List the tournaments of an event, hidden ones for organizers only."""
    registry = current_app.tournaments
    relations = parse_relations(request.args, registry.RELATIONS)
    tournaments = registry.list_tournaments(current_user(), event_id, parse_filters(request.args, Tournament))
    return jsonify({
        'tournaments': [registry.serialize(t, relations) for t in tournaments],
        'count': len(tournaments)
    })


@bp.route('/events/<int:event_id>/tournaments', methods=['POST'])
@login_required
def create_tournament(event_id: int):
    tournament = current_app.tournaments.create_tournament(
        current_user(), event_id, request_payload(TournamentCreate)
    )
    return jsonify({'message': 'Tournament created', 'tournament': tournament.to_dict()}), 201


@bp.route('/tournaments/<int:tournament_id>', methods=['GET'])
@login_required
def get_tournament(tournament_id: int):
    registry = current_app.tournaments
    relations = parse_relations(request.args, registry.RELATIONS)
    tournament = registry.get_tournament(current_user(), tournament_id)
    return jsonify(registry.serialize(tournament, relations))


@bp.route('/tournaments/<int:tournament_id>', methods=['PATCH'])
@login_required
def update_tournament(tournament_id: int):
    """Edit a tournament; a new ``status`` goes through the state machine."""
    tournament = current_app.tournaments.update_tournament(
        current_user(), tournament_id, request_payload(TournamentPatch)
    )
    return jsonify({'message': 'Tournament updated', 'tournament': tournament.to_dict()})


@bp.route('/tournaments/<int:tournament_id>', methods=['DELETE'])
@login_required
def delete_tournament(tournament_id: int):
    current_app.tournaments.delete_tournament(current_user(), tournament_id)
    return jsonify({'message': 'Tournament deleted'})


@bp.route('/tournaments/<int:tournament_id>/results', methods=['PUT'])
@login_required
def end_tournament(tournament_id: int):
    """End the tournament with its final ranking."""
    tournament = current_app.tournaments.end_tournament(
        current_user(), tournament_id, request_payload(Ranking)
    )
    teams = current_app.tournaments.serialize(tournament, ('teams',))['teams']
    return jsonify({
        'message': 'Tournament ended',
        'tournament': tournament.to_dict(),
        'teams': teams
    })
