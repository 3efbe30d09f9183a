"""In-memory index of running games.

The registry owns every ``LiveGame`` of the process. Callers mutate a game
only while holding its lock, which :meth:`GameRegistry.locked` hands out;
the map itself is guarded by a separate registry lock that is never held
while waiting for a game lock.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Optional

from quizx.models import STATUS_LOBBY
from .collaborators import QuizContent
from .errors import GAME_NOT_FOUND, DuplicateCodeError, NotFoundError
from .settings import GameSettings


@dataclass
class AnswerRecord:
    question_index: int
    answer: Any
    is_correct: bool
    time_ms: int
    points_earned: int


@dataclass
class LiveParticipant:
    nickname: str
    connection_id: str
    user_id: Optional[int] = None
    score: int = 0
    answers: dict[int, AnswerRecord] = field(default_factory=dict)
    # self-paced cursor, independent of the session-level index
    current_question_index: int = 0
    question_start_time: Optional[float] = None
    finished: bool = False
    finished_at: Optional[float] = None

    @property
    def correct_count(self) -> int:
        return sum(1 for a in self.answers.values() if a.is_correct)


@dataclass
class LiveGame:
    game_code: str
    session_id: int
    quiz: QuizContent
    host_id: int
    host_connection_id: str
    settings: GameSettings
    status: str = STATUS_LOBBY
    # keyed by connection id, insertion order is join order
    participants: dict[str, LiveParticipant] = field(default_factory=dict)
    nicknames: set[str] = field(default_factory=set)
    current_question_index: int = -1
    question_start_time: Optional[float] = None
    game_start_time: Optional[float] = None
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)

    @property
    def started(self) -> bool:
        return self.game_start_time is not None

    @property
    def total_questions(self) -> int:
        return self.quiz.total_questions

    def finished_count(self) -> int:
        return sum(1 for p in self.participants.values() if p.finished)

    def all_finished(self) -> bool:
        return all(p.finished for p in self.participants.values())

    def leaderboard(self, limit: Optional[int] = None) -> list[dict]:
        # sorted() is stable, so ties keep join order
        ranked = sorted(self.participants.values(), key=lambda p: -p.score)
        if limit is not None:
            ranked = ranked[:limit]
        return [
            {'rank': idx + 1, 'nickname': p.nickname, 'score': p.score}
            for idx, p in enumerate(ranked)
        ]

    def question_payload(self, index: int) -> dict:
        """Client-safe view of a question; never includes the answer."""
        question = self.quiz.questions[index]
        return {
            'index': index,
            'questionText': question.question_text,
            'options': list(question.options),
            'totalQuestions': self.total_questions,
        }


class GameRegistry:
    def __init__(self, eviction_delay: float = 60.0,
                 spawn: Optional[Callable[..., Any]] = None,
                 sleep: Callable[[float], Any] = time.sleep,
                 logger: Optional[logging.Logger] = None):
        self.eviction_delay = eviction_delay
        self.spawn = spawn
        self.sleep = sleep
        self.logger = logger or logging.getLogger(__name__)
        self.pending_evictions: set[str] = set()
        self._games: dict[str, LiveGame] = {}
        self._lock = threading.Lock()

    def __contains__(self, game_code: str) -> bool:
        return game_code in self._games

    def __len__(self) -> int:
        return len(self._games)

    def codes(self) -> list[str]:
        with self._lock:
            return list(self._games)

    def create(self, game_code: str, session_id: int, quiz: QuizContent, host_id: int,
               host_connection_id: str, settings: GameSettings) -> LiveGame:
        with self._lock:
            if game_code in self._games:
                raise DuplicateCodeError(f'Game code {game_code} is already in use')
            game = LiveGame(
                game_code=game_code,
                session_id=session_id,
                quiz=quiz,
                host_id=host_id,
                host_connection_id=host_connection_id,
                settings=settings,
            )
            self._games[game_code] = game
            return game

    def get(self, game_code: str) -> LiveGame:
        with self._lock:
            game = self._games.get(game_code)
        if game is None:
            raise NotFoundError(GAME_NOT_FOUND)
        return game

    @contextmanager
    def locked(self, game_code: str) -> Iterator[LiveGame]:
        game = self.get(game_code)
        with game.lock:
            # evicted while we waited for the lock
            if self._games.get(game_code) is not game:
                raise NotFoundError(GAME_NOT_FOUND)
            yield game

    def evict(self, game_code: str, expected: Optional[LiveGame] = None) -> bool:
        """Drop a game. With ``expected``, only if the code still maps to it."""
        with self._lock:
            current = self._games.get(game_code)
            if current is None or (expected is not None and current is not expected):
                return False
            del self._games[game_code]
            self.pending_evictions.discard(game_code)
        self.logger.info(f"[evict] code={game_code}")
        return True

    def schedule_eviction(self, game_code: str) -> None:
        with self._lock:
            game = self._games.get(game_code)
        if game is None:
            return
        if self.spawn is None:
            self.pending_evictions.add(game_code)
            self.logger.info(f"[evict-skip] code={game_code} timers disabled")
            return

        def _runner(code: str, target: LiveGame, delay: float):
            if delay:
                self.sleep(delay)
            self.evict(code, expected=target)

        self.logger.info(f"[evict-scheduled] code={game_code} delay={self.eviction_delay}s")
        self.spawn(_runner, game_code, game, self.eviction_delay)

    def clear(self) -> None:
        with self._lock:
            self._games.clear()
            self.pending_evictions.clear()
