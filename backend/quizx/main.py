from flask import Blueprint, current_app, jsonify

main = Blueprint('main', __name__)


@main.route('/')
def index():
    registry = current_app.extensions['game_engine'].registry
    return jsonify({'message': 'Welcome to the QuizX live game server!', 'live_games': len(registry)})
