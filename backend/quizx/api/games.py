from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required
from quizx.models import STATUS_PLAYING
from quizx.services.games.engine import parse_game_code
from quizx.services.games.errors import ValidationError

games = Blueprint('games', __name__)


def _store():
    return current_app.extensions['game_engine'].store


def _iso(value):
    return value.isoformat() if value else None


@games.route('/join/<string:code>', methods=['GET'])
def validate_game_code(code):
    """
    Lets a player check a game code before opening a socket.
    """
    try:
        code = parse_game_code(code)
    except ValidationError:
        return jsonify({'error': 'Invalid game code'}), 400

    session = _store().find_joinable(code)
    if not session:
        return jsonify({'error': 'Game not found'}), 404

    if session.status == STATUS_PLAYING and not (session.settings or {}).get('allowLateJoin'):
        return jsonify({'error': 'Game already in progress'}), 400

    return jsonify({
        'gameCode': session.game_code,
        'quizTitle': session.quiz.title if session.quiz else 'Quiz',
        'category': (session.quiz.category if session.quiz else None) or 'Other',
        'participantCount': len(session.participants),
        'status': session.status,
    }), 200


@games.route('/session/<int:session_id>', methods=['GET'])
@login_required
def get_game_session(session_id):
    """
    Full session record, including every answer. Host only.
    """
    session = _store().get(session_id)
    if not session:
        return jsonify({'error': 'Game session not found'}), 404
    if session.host_id != current_user.id:
        return jsonify({'error': 'Not authorized'}), 403

    payload = session.to_dict(include_answers=True)
    payload['quiz'] = {
        'id': session.quiz.id,
        'title': session.quiz.title,
        'category': session.quiz.category,
        'difficulty': session.quiz.difficulty,
        'totalQuestions': session.quiz.total_questions,
    } if session.quiz else None
    return jsonify({'session': payload}), 200


@games.route('/results/<int:session_id>', methods=['GET'])
def get_game_results(session_id):
    session = _store().get(session_id)
    if not session:
        return jsonify({'error': 'Game not found'}), 404

    return jsonify({
        'quizTitle': session.quiz.title if session.quiz else None,
        'category': session.quiz.category if session.quiz else None,
        'totalParticipants': session.total_participants,
        'averageScore': session.average_score,
        'leaderboard': session.get_leaderboard(),
        'startedAt': _iso(session.started_at),
        'endedAt': _iso(session.ended_at),
    }), 200


@games.route('/history', methods=['GET'])
@login_required
def get_game_history():
    """
    Sessions hosted by the current user, newest first.
    """
    page = request.args.get('page', 1, type=int) or 1
    limit = request.args.get('limit', 10, type=int) or 10
    page = max(1, page)
    limit = min(max(1, limit), 100)

    pagination = _store().host_history(current_user.id, page, limit)
    return jsonify({
        'games': [
            {
                'id': s.id,
                'gameCode': s.game_code,
                'status': s.status,
                'quizTitle': s.quiz.title if s.quiz else None,
                'totalParticipants': s.total_participants,
                'averageScore': s.average_score,
                'createdAt': _iso(s.created_at),
                'endedAt': _iso(s.ended_at),
            }
            for s in pagination.items
        ],
        'pagination': {
            'page': page,
            'limit': limit,
            'total': pagination.total,
            'pages': pagination.pages,
        },
    }), 200
