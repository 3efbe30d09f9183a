from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional
import threading

from flask import current_app, request
from flask_socketio import emit, join_room
from quizx import socketio
from quizx.services.games.engine import GameEngine, Outbound, ServerEvent
from quizx.services.games.errors import GameError, NotFoundError, StateConflictError

ROLE_HOST = 'host'
ROLE_PLAYER = 'player'


class ClientEvent(str, Enum):
    CREATE_GAME = 'create-game'
    START_GAME = 'start-game'
    JOIN_GAME = 'join-game'
    SUBMIT_ANSWER = 'submit-answer'
    NEXT_QUESTION = 'next-question'
    SHOW_QUESTION_RESULTS = 'show-question-results'
    END_GAME = 'end-game'


@dataclass(frozen=True)
class ConnectionTag:
    game_code: str
    role: str
    nickname: Optional[str] = None


class ConnectionTable:
    """Which game and role each socket belongs to."""

    def __init__(self):
        self._tags: Dict[str, ConnectionTag] = {}
        self._lock = threading.Lock()

    def __len__(self):
        return len(self._tags)

    def get(self, sid: str) -> Optional[ConnectionTag]:
        with self._lock:
            return self._tags.get(sid)

    def require_unbound(self, sid: str) -> None:
        if self.get(sid) is not None:
            raise StateConflictError('This connection is already in a game')

    def bind(self, sid: str, tag: ConnectionTag) -> None:
        with self._lock:
            self._tags[sid] = tag

    def pop(self, sid: str) -> Optional[ConnectionTag]:
        with self._lock:
            return self._tags.pop(sid, None)


def room_for(game_code: str) -> str:
    return f"game:{game_code}"


def _get_sid() -> str:
    # type: ignore: request.sid exists in Socket.IO context
    return request.sid  # type: ignore


def _engine() -> GameEngine:
    return current_app.extensions['game_engine']


def _connections() -> ConnectionTable:
    return current_app.extensions['game_connections']


def _deliver(messages: List[Outbound]) -> None:
    namespace = current_app.config.get('GAME_NAMESPACE', '/game')
    for message in messages:
        target = message.to if message.to is not None else room_for(message.room)
        socketio.emit(message.event.value, message.payload, to=target, namespace=namespace)


# ---- inbound handlers: translate payloads, never decide ----

def on_create_game(data) -> List[Outbound]:
    sid = _get_sid()
    _connections().require_unbound(sid)
    outcome = _engine().create_game(sid, data.get('quizId'), data.get('hostId'), data.get('settings'))
    join_room(room_for(outcome.game_code))
    _connections().bind(sid, ConnectionTag(outcome.game_code, ROLE_HOST))
    return outcome.messages


def on_start_game(data) -> List[Outbound]:
    return _engine().start_game(data.get('gameCode'), _get_sid(), data.get('hostNickname')).messages


def on_join_game(data) -> List[Outbound]:
    sid = _get_sid()
    _connections().require_unbound(sid)
    outcome = _engine().join_game(data.get('gameCode'), sid, data.get('nickname'), data.get('userId'))
    join_room(room_for(outcome.game_code))
    joined = next((m.payload for m in outcome.messages if m.event == ServerEvent.JOINED_GAME), {})
    _connections().bind(sid, ConnectionTag(outcome.game_code, ROLE_PLAYER, joined.get('nickname')))
    return outcome.messages


def on_submit_answer(data) -> List[Outbound]:
    return _engine().submit_answer(
        data.get('gameCode'), _get_sid(), data.get('questionIndex'), data.get('answer')
    ).messages


def on_next_question(data) -> List[Outbound]:
    return _engine().next_question(data.get('gameCode'), _get_sid()).messages


def on_show_question_results(data) -> List[Outbound]:
    return _engine().show_question_results(data.get('gameCode'), _get_sid()).messages


def on_end_game(data) -> List[Outbound]:
    return _engine().request_end_game(data.get('gameCode'), _get_sid()).messages


_HANDLERS: Dict[ClientEvent, Callable[[dict], List[Outbound]]] = {
    ClientEvent.CREATE_GAME: on_create_game,
    ClientEvent.START_GAME: on_start_game,
    ClientEvent.JOIN_GAME: on_join_game,
    ClientEvent.SUBMIT_ANSWER: on_submit_answer,
    ClientEvent.NEXT_QUESTION: on_next_question,
    ClientEvent.SHOW_QUESTION_RESULTS: on_show_question_results,
    ClientEvent.END_GAME: on_end_game,
}

_FAILURE_MESSAGES: Dict[ClientEvent, str] = {
    ClientEvent.CREATE_GAME: 'Failed to create game',
    ClientEvent.START_GAME: 'Failed to start game',
    ClientEvent.JOIN_GAME: 'Failed to join game',
    ClientEvent.SUBMIT_ANSWER: 'Failed to submit answer',
    ClientEvent.NEXT_QUESTION: 'Failed to advance question',
    ClientEvent.SHOW_QUESTION_RESULTS: 'Failed to show results',
    ClientEvent.END_GAME: 'Failed to end game',
}


def _dispatch(kind: ClientEvent, handler: Callable[[dict], List[Outbound]]):
    def _handle(data=None):
        payload = data if isinstance(data, dict) else {}
        try:
            messages = handler(payload)
        except GameError as exc:
            current_app.logger.info(f"[rejected] event={kind.value} sid={_get_sid()} reason={exc.message}")
            emit(ServerEvent.ERROR.value, {'message': exc.message})
            return
        except Exception:
            current_app.logger.exception(f"[handler-fail] event={kind.value} sid={_get_sid()}")
            emit(ServerEvent.ERROR.value, {'message': _FAILURE_MESSAGES[kind]})
            return
        _deliver(messages)

    _handle.__name__ = f"handle_{kind.name.lower()}"
    return _handle


def handle_connect(auth=None):
    emit('connected', {'message': 'Connected to live game server'})


def handle_disconnect(reason=None):
    sid = _get_sid()
    tag = _connections().pop(sid)
    if not tag:
        return
    current_app.logger.info(f"[disconnect] sid={sid} code={tag.game_code} role={tag.role} nickname={tag.nickname}")
    try:
        outcome = _engine().disconnect(tag.game_code, sid)
    except NotFoundError:
        # Game already evicted
        return
    except Exception:
        current_app.logger.exception(f"[disconnect-fail] sid={sid} code={tag.game_code}")
        return
    _deliver(outcome.messages)


def register_socketio_handlers(namespace: str = '/game') -> None:
    """Register every client event on the game namespace.

    Fails fast if a ``ClientEvent`` member has no handler.
    """
    missing = set(ClientEvent) - set(_HANDLERS)
    if missing:
        raise RuntimeError(f"No handler for client events: {sorted(k.value for k in missing)}")

    socketio.on_event('connect', handle_connect, namespace=namespace)
    socketio.on_event('disconnect', handle_disconnect, namespace=namespace)
    for kind, handler in _HANDLERS.items():
        socketio.on_event(kind.value, _dispatch(kind, handler), namespace=namespace)
