import os
import sys
import pytest

# Ensure the backend root (containing the `quizx` package) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
BACKEND_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if BACKEND_ROOT not in sys.path:
    sys.path.insert(0, BACKEND_ROOT)

from flask import g
from flask_login import FlaskLoginClient

from quizx import create_app, db, socketio
from quizx.models import QUIZ_COMPLETED, Question, Quiz, User

NAMESPACE = '/game'

SAMPLE_QUESTIONS = [
    ('What is 2 + 2?', ['3', '4', '5', '22'], '4', 'Basic addition.'),
    ('Which planet is known as the Red Planet?', ['Venus', 'Mars', 'Jupiter', 'Mercury'], 'Mars', None),
    ('What is the chemical symbol for water?', ['O2', 'CO2', 'H2O', 'HO'], 'H2O', 'Two hydrogens, one oxygen.'),
]


class TestConfig:
    TESTING = True
    SECRET_KEY = os.environ.get('SECRET_KEY', 'test-secret')
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    GAME_NAMESPACE = NAMESPACE
    GAME_EVICTION_DELAY_SEC = 60
    SCORING_WINDOW_MS = 30000


class FakeClock:
    """Millisecond clock the tests move by hand."""

    def __init__(self, start=1_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, ms):
        self.now += ms


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def flask_app(clock):
    application = create_app(TestConfig)
    application.test_client_class = FlaskLoginClient
    application.extensions['game_engine'].clock = clock
    with application.app_context():
        # Ensure models are imported so tables are created
        import quizx.models  # noqa: F401
        db.create_all()
        yield application
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def engine(flask_app):
    return flask_app.extensions['game_engine']


@pytest.fixture()
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture()
def login_client(flask_app):
    def _client(user):
        # the app context outlives each request, so drop the user Flask-Login cached on g
        g.pop('_login_user', None)
        return flask_app.test_client(user=user)
    return _client


@pytest.fixture()
def make_user(flask_app):
    def _make(username):
        user = User(username=username)
        db.session.add(user)
        db.session.commit()
        return user
    return _make


@pytest.fixture()
def host_user(make_user):
    return make_user('host')


@pytest.fixture()
def make_quiz(flask_app):
    def _make(owner, status=QUIZ_COMPLETED, is_public=False, questions=SAMPLE_QUESTIONS, title='Science Basics'):
        quiz = Quiz(title=title, category='Science', status=status, generated_by=owner.id, is_public=is_public)
        for position, (text, options, correct, explanation) in enumerate(questions):
            quiz.questions.append(Question(position=position, question_text=text, options=list(options),
                                           correct_answer=correct, explanation=explanation))
        db.session.add(quiz)
        db.session.commit()
        return quiz
    return _make


@pytest.fixture()
def quiz(make_quiz, host_user):
    return make_quiz(host_user)


@pytest.fixture()
def sio_factory(flask_app):
    clients = []

    def _connect():
        test_client = socketio.test_client(
            flask_app,
            flask_test_client=flask_app.test_client(),
            namespace=NAMESPACE,
        )
        clients.append(test_client)
        return test_client

    yield _connect
    for test_client in clients:
        try:
            if test_client.is_connected(NAMESPACE):
                test_client.disconnect(namespace=NAMESPACE)
        except Exception:
            pass


def drain(test_client):
    """Everything delivered to a socket test client since the last drain."""
    return test_client.get_received(NAMESPACE)


def payloads(packets, name):
    return [pkt['args'][0] if pkt['args'] else None for pkt in packets if pkt['name'] == name]
