from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from flask_login import LoginManager
from flask_cors import CORS
from flask_migrate import Migrate
from flask_socketio import SocketIO
import click
from config import Config

db = SQLAlchemy()
login_manager = LoginManager()
migrate = Migrate()
socketio = SocketIO(async_mode=None)


def _build_game_engine(flask_app):
    """Construct the live game services owned by this app."""
    from quizx.services.games.collaborators import SqlActivityRecorder, SqlQuizProvider
    from quizx.services.games.engine import GameEngine
    from quizx.services.games.persistence import WriteBehindQueue
    from quizx.services.games.registry import GameRegistry
    from quizx.services.games.store import SessionStore

    testing = flask_app.config.get('TESTING', False)
    # Timers are disabled in tests unless explicitly enabled
    timers_enabled = not testing or flask_app.config.get('ENABLE_EVICTION_IN_TESTS', False)
    registry = GameRegistry(
        eviction_delay=float(flask_app.config.get('GAME_EVICTION_DELAY_SEC', 60)),
        spawn=socketio.start_background_task if timers_enabled else None,
        sleep=socketio.sleep,
        logger=flask_app.logger,
    )
    persistence = WriteBehindQueue(
        flask_app,
        synchronous=testing,
        spawn=socketio.start_background_task,
        logger=flask_app.logger,
    )
    return GameEngine.from_config(
        flask_app.config,
        registry=registry,
        store=SessionStore(),
        persistence=persistence,
        quizzes=SqlQuizProvider(),
        activity=SqlActivityRecorder(),
        logger=flask_app.logger,
    )


def create_app(config_class=Config):
    flask_app = Flask(__name__)
    flask_app.config.from_object(config_class)
    allowed_origins = [o.strip() for o in flask_app.config.get('CORS_ORIGINS', '').split(',') if o.strip()]

    db.init_app(flask_app)
    login_manager.init_app(flask_app)
    migrate.init_app(flask_app, db)
    CORS(flask_app, supports_credentials=True, origins=allowed_origins)

    # Initialize Socket.IO after app is created
    socketio.init_app(flask_app, cors_allowed_origins=allowed_origins)

    # Import and register blueprints here
    from quizx.main import main
    flask_app.register_blueprint(main)

    from quizx.api.games import games
    flask_app.register_blueprint(games, url_prefix='/api/games')

    from quizx.socketio_events import ConnectionTable, register_socketio_handlers
    flask_app.extensions['game_engine'] = _build_game_engine(flask_app)
    flask_app.extensions['game_connections'] = ConnectionTable()
    register_socketio_handlers(namespace=flask_app.config.get('GAME_NAMESPACE', '/game'))

    # Flask-Login user loader; accounts are created by the auth service
    from quizx.models import User

    @login_manager.user_loader
    def load_user(user_id):
        return db.session.get(User, int(user_id))

    @click.command('db-reset')
    def db_reset_command():
        """Drops, recreates, and seeds the database."""
        from quizx.models import Quiz, Question, QUIZ_COMPLETED
        with flask_app.app_context():
            db.drop_all()
            db.create_all()

            host = User(username='demohost')
            db.session.add(host)
            db.session.flush()

            quiz = Quiz(title='Demo Quiz', category='General', status=QUIZ_COMPLETED,
                        generated_by=host.id, is_public=True)
            samples = [
                ('What is 2 + 2?', ['3', '4', '5', '22'], '4'),
                ('Which planet is known as the Red Planet?', ['Venus', 'Mars', 'Jupiter', 'Mercury'], 'Mars'),
                ('What is the chemical symbol for water?', ['O2', 'CO2', 'H2O', 'HO'], 'H2O'),
            ]
            for position, (text, options, correct) in enumerate(samples):
                quiz.questions.append(Question(position=position, question_text=text,
                                               options=options, correct_answer=correct))
            db.session.add(quiz)
            db.session.commit()
            click.echo('Database has been reset and seeded!')

    flask_app.cli.add_command(db_reset_command)

    return flask_app
