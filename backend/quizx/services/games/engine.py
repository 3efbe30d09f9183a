"""Live game state machine.

Sessions move ``lobby -> playing -> finished``; ``paused`` is entered when the
host connection drops. Progression is self-paced: each participant carries
its own question cursor and start time, and only that participant hears
about their next question. The host-paced controls (``next_question``,
``show_question_results``) work on the session-level index and never touch
participant cursors.

Every operation returns an :class:`Outcome` listing the messages to send;
the engine itself knows nothing about sockets. Rejections raise
:class:`~quizx.services.games.errors.GameError` subclasses before any state
is changed.
"""

from __future__ import annotations

import dataclasses
import logging
import random
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

from quizx.models import (
    QUIZ_COMPLETED, STATUS_FINISHED, STATUS_LOBBY, STATUS_PAUSED, STATUS_PLAYING, utcnow,
)
from .collaborators import QuizContent
from .errors import (
    AlreadyFinishedError, DuplicateAnswerError, GameError, NotAuthorizedError, NotFoundError,
    StaleQuestionError, StateConflictError, ValidationError,
)
from .registry import AnswerRecord, GameRegistry, LiveGame, LiveParticipant
from .scoring import DEFAULT_SCORING_WINDOW_MS, calculate_score
from .settings import GameSettings

_GAME_CODE_RE = re.compile(r'^\d{6}$')


class ServerEvent(str, Enum):
    GAME_CREATED = 'game-created'
    JOINED_GAME = 'joined-game'
    PLAYER_JOINED = 'player-joined'
    PLAYER_LEFT = 'player-left'
    GAME_STARTED = 'game-started'
    NEXT_QUESTION = 'next-question'
    NEW_QUESTION = 'new-question'
    PLAYER_FINISHED = 'player-finished'
    PLAYER_PROGRESS = 'player-progress'
    QUESTION_RESULTS = 'question-results'
    GAME_ENDED = 'game-ended'
    HOST_DISCONNECTED = 'host-disconnected'
    ERROR = 'error'


@dataclass(frozen=True)
class Outbound:
    """One message for either a single connection (``to``) or a game room."""

    event: ServerEvent
    payload: dict
    to: Optional[str] = None
    room: Optional[str] = None


@dataclass
class Outcome:
    game_code: str
    messages: list[Outbound] = field(default_factory=list)

    def events(self) -> list[str]:
        return [m.event.value for m in self.messages]


def personal(event: ServerEvent, payload: dict, connection_id: str) -> Outbound:
    return Outbound(event=event, payload=payload, to=connection_id)


def broadcast(event: ServerEvent, payload: dict, game_code: str) -> Outbound:
    return Outbound(event=event, payload=payload, room=game_code)


def parse_game_code(value: Any) -> str:
    if isinstance(value, int) and not isinstance(value, bool):
        value = str(value)
    if not isinstance(value, str) or not _GAME_CODE_RE.match(value.strip()):
        raise ValidationError('Invalid game code')
    return value.strip()


def parse_id(value: Any, label: str) -> int:
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f'Invalid {label}')
    return value


def _parse_question_index(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError('Invalid question index')
    return value


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


class GameEngine:
    def __init__(self, registry: GameRegistry, store, persistence, quizzes, activity,
                 clock: Optional[Callable[[], float]] = None,
                 rng: Optional[random.Random] = None,
                 scoring_window_ms: int = DEFAULT_SCORING_WINDOW_MS,
                 default_question_timer: int = 20,
                 default_points_per_question: int = 1000,
                 results_leaderboard_size: int = 5,
                 final_leaderboard_size: int = 100,
                 win_xp: int = 100,
                 play_xp: int = 30,
                 max_nickname_length: int = 32,
                 logger: Optional[logging.Logger] = None):
        self.registry = registry
        self.store = store
        self.persistence = persistence
        self.quizzes = quizzes
        self.activity = activity
        self.clock = clock or _monotonic_ms
        self.rng = rng or random.Random()
        self.scoring_window_ms = scoring_window_ms
        self.default_question_timer = default_question_timer
        self.default_points_per_question = default_points_per_question
        self.results_leaderboard_size = results_leaderboard_size
        self.final_leaderboard_size = final_leaderboard_size
        self.win_xp = win_xp
        self.play_xp = play_xp
        self.max_nickname_length = max_nickname_length
        self.logger = logger or logging.getLogger(__name__)

    @classmethod
    def from_config(cls, config, registry, store, persistence, quizzes, activity, logger=None) -> 'GameEngine':
        return cls(
            registry, store, persistence, quizzes, activity,
            scoring_window_ms=int(config.get('SCORING_WINDOW_MS', DEFAULT_SCORING_WINDOW_MS)),
            default_question_timer=int(config.get('DEFAULT_QUESTION_TIMER_SEC', 20)),
            default_points_per_question=int(config.get('DEFAULT_POINTS_PER_QUESTION', 1000)),
            results_leaderboard_size=int(config.get('RESULTS_LEADERBOARD_SIZE', 5)),
            final_leaderboard_size=int(config.get('FINAL_LEADERBOARD_SIZE', 100)),
            win_xp=int(config.get('WIN_XP', 100)),
            play_xp=int(config.get('PLAY_XP', 30)),
            max_nickname_length=int(config.get('MAX_NICKNAME_LENGTH', 32)),
            logger=logger,
        )

    def now(self) -> float:
        return self.clock()

    # ---- host lifecycle ----

    def create_game(self, connection_id: str, quiz_id: Any, host_id: Any, settings: Any = None) -> Outcome:
        quiz_id = parse_id(quiz_id, 'quiz ID')
        host_id = parse_id(host_id, 'host ID')
        game_settings = GameSettings.from_payload(
            settings,
            question_timer=self.default_question_timer,
            points_per_question=self.default_points_per_question,
        )

        quiz = self.quizzes.get_quiz_by_id(quiz_id)
        if quiz is None:
            raise NotFoundError('Quiz not found')
        if quiz.status != QUIZ_COMPLETED:
            raise StateConflictError('Quiz is not ready yet')
        if quiz.owner_id != host_id and not quiz.is_public:
            raise NotAuthorizedError('Not authorized to host this quiz')
        if not quiz.questions:
            raise StateConflictError('Quiz has no questions')

        # The durable record must exist before a code is handed out
        try:
            record = self.store.create(host_id, quiz_id, game_settings.to_dict(), exclude=self.registry.codes())
        except SQLAlchemyError as exc:
            self.logger.exception(f"[create-fail] quiz={quiz_id} host={host_id}")
            raise GameError('Failed to create game') from exc
        game_code, session_id = record.game_code, record.id

        self.registry.create(
            game_code, session_id, self._prepare_quiz(quiz, game_settings),
            host_id, connection_id, game_settings,
        )
        self.logger.info(f"[game-created] code={game_code} session={session_id} quiz={quiz_id} host={host_id}")
        return Outcome(game_code, [personal(ServerEvent.GAME_CREATED, {
            'gameCode': game_code,
            'sessionId': session_id,
            'quiz': quiz.summary(),
        }, connection_id)])

    def start_game(self, game_code: Any, connection_id: str, host_nickname: Any = None) -> Outcome:
        code = parse_game_code(game_code)
        nickname = self._parse_nickname(host_nickname, required=False) or 'Host'
        with self.registry.locked(code) as game:
            self._require_host(game, connection_id)
            if game.status != STATUS_LOBBY:
                raise StateConflictError('Game already started')

            now = self.now()
            host_nickname = self._unique_nickname(game, nickname)
            game.participants[connection_id] = LiveParticipant(
                nickname=host_nickname,
                connection_id=connection_id,
                user_id=game.host_id,
            )
            game.nicknames.add(host_nickname)
            for participant in game.participants.values():
                participant.current_question_index = 0
                participant.question_start_time = now
                participant.finished = False

            game.status = STATUS_PLAYING
            game.game_start_time = now
            game.current_question_index = 0
            game.question_start_time = now

            started_at = utcnow()
            self.persistence.submit('append-participant', self.store.append_participant,
                                    game.session_id, host_nickname, connection_id, game.host_id, started_at)
            self.persistence.submit('mark-started', self.store.mark_started, game.session_id, started_at)

            self.logger.info(f"[game-started] code={code} players={len(game.participants)}")
            return Outcome(code, [broadcast(ServerEvent.GAME_STARTED, {
                'question': game.question_payload(0),
                'totalQuestions': game.total_questions,
                'questionTimer': game.settings.question_timer,
            }, code)])

    # ---- players ----

    def join_game(self, game_code: Any, connection_id: str, nickname: Any, user_id: Any = None) -> Outcome:
        code = parse_game_code(game_code)
        nickname = self._parse_nickname(nickname)
        user_id = None if user_id in (None, '') else parse_id(user_id, 'user ID')
        with self.registry.locked(code) as game:
            if connection_id == game.host_connection_id or connection_id in game.participants:
                raise StateConflictError('You have already joined this game')
            late = game.status == STATUS_PLAYING
            if game.status != STATUS_LOBBY and not (late and game.settings.allow_late_join):
                raise StateConflictError('Game already started')

            final_nickname = self._unique_nickname(game, nickname)
            participant = LiveParticipant(nickname=final_nickname, connection_id=connection_id, user_id=user_id)
            if late:
                participant.question_start_time = self.now()
            game.participants[connection_id] = participant
            game.nicknames.add(final_nickname)
            self.persistence.submit('append-participant', self.store.append_participant,
                                    game.session_id, final_nickname, connection_id, user_id, utcnow())

            count = len(game.participants)
            self.logger.info(f"[join] code={code} nickname={final_nickname} participants={count} late={late}")
            messages = [
                personal(ServerEvent.JOINED_GAME, {
                    'nickname': final_nickname,
                    'quizTitle': game.quiz.title,
                    'participantCount': count,
                }, connection_id),
                broadcast(ServerEvent.PLAYER_JOINED, {
                    'nickname': final_nickname,
                    'participantCount': count,
                    'participants': [{'nickname': p.nickname} for p in game.participants.values()],
                }, code),
            ]
            if late:
                messages.append(personal(ServerEvent.GAME_STARTED, {
                    'question': game.question_payload(0),
                    'totalQuestions': game.total_questions,
                    'questionTimer': game.settings.question_timer,
                }, connection_id))
            return Outcome(code, messages)

    def submit_answer(self, game_code: Any, connection_id: str, question_index: Any, answer: Any) -> Outcome:
        code = parse_game_code(game_code)
        index = _parse_question_index(question_index)
        if isinstance(answer, (dict, list)):
            raise ValidationError('Invalid answer')
        with self.registry.locked(code) as game:
            # A paused game (host gone) keeps accepting self-paced answers
            if not game.started or game.status not in (STATUS_PLAYING, STATUS_PAUSED):
                raise StateConflictError('Game is not in progress')
            participant = game.participants.get(connection_id)
            if participant is None:
                raise NotAuthorizedError('You are not in this game')
            if participant.finished:
                raise AlreadyFinishedError('You have already finished')
            if index != participant.current_question_index:
                raise StaleQuestionError('Invalid question')
            if index in participant.answers:
                raise DuplicateAnswerError('Already answered')

            question = game.quiz.questions[index]
            is_correct = answer == question.correct_answer
            now = self.now()
            started = participant.question_start_time if participant.question_start_time is not None else now
            response_ms = max(0, int(round(now - started)))
            points = calculate_score(is_correct, response_ms, self.scoring_window_ms,
                                     game.settings.points_per_question)

            participant.answers[index] = AnswerRecord(
                question_index=index,
                answer=answer,
                is_correct=is_correct,
                time_ms=response_ms,
                points_earned=points,
            )
            participant.score += points
            participant.current_question_index = index + 1
            self.persistence.submit('record-score', self.store.record_participant_score,
                                    game.session_id, connection_id, participant.score,
                                    index, answer, is_correct, response_ms, points)
            self.logger.info(
                f"[answer] code={code} nickname={participant.nickname} q={index} "
                f"correct={is_correct} points={points} ms={response_ms}"
            )

            if participant.current_question_index < game.total_questions:
                participant.question_start_time = now
                next_index = participant.current_question_index
                return Outcome(code, [personal(ServerEvent.NEXT_QUESTION, {
                    'question': game.question_payload(next_index),
                    'previousAnswer': {
                        'wasCorrect': is_correct,
                        'correctAnswer': question.correct_answer,
                        'pointsEarned': points,
                    },
                    'totalScore': participant.score,
                }, connection_id)])

            participant.finished = True
            participant.finished_at = now
            messages = [personal(ServerEvent.PLAYER_FINISHED, {
                'totalScore': participant.score,
                'correctCount': participant.correct_count,
                'totalQuestions': game.total_questions,
                'timeTaken': int(round(now - (game.game_start_time or now))),
            }, connection_id)]
            if game.all_finished():
                messages.extend(self._finish(game))
            else:
                messages.append(broadcast(ServerEvent.PLAYER_PROGRESS, {
                    'finishedCount': game.finished_count(),
                    'totalPlayers': len(game.participants),
                }, code))
            return Outcome(code, messages)

    # ---- host-paced controls ----

    def next_question(self, game_code: Any, connection_id: str) -> Outcome:
        code = parse_game_code(game_code)
        with self.registry.locked(code) as game:
            self._require_host(game, connection_id)
            if game.status != STATUS_PLAYING:
                raise StateConflictError('Game is not in progress')
            next_index = game.current_question_index + 1
            if next_index >= game.total_questions:
                return Outcome(code, self._finish(game))

            game.current_question_index = next_index
            game.question_start_time = self.now()
            self.persistence.submit('set-current-question', self.store.set_current_question,
                                    game.session_id, next_index, utcnow())
            return Outcome(code, [broadcast(ServerEvent.NEW_QUESTION, {
                'question': game.question_payload(next_index),
                'questionTimer': game.settings.question_timer,
            }, code)])

    def show_question_results(self, game_code: Any, connection_id: str) -> Outcome:
        code = parse_game_code(game_code)
        with self.registry.locked(code) as game:
            self._require_host(game, connection_id)
            if game.status != STATUS_PLAYING:
                raise StateConflictError('Game is not in progress')
            index = game.current_question_index
            question = game.quiz.questions[index]

            answer_counts = {option: 0 for option in question.options}
            correct_count = 0
            total_answers = 0
            for participant in game.participants.values():
                record = participant.answers.get(index)
                if record is None:
                    continue
                total_answers += 1
                key = record.answer if isinstance(record.answer, str) else str(record.answer)
                answer_counts[key] = answer_counts.get(key, 0) + 1
                if record.is_correct:
                    correct_count += 1

            return Outcome(code, [broadcast(ServerEvent.QUESTION_RESULTS, {
                'correctAnswer': question.correct_answer,
                'explanation': question.explanation,
                'answerCounts': answer_counts,
                'correctCount': correct_count,
                'totalAnswers': total_answers,
                'leaderboard': game.leaderboard(self.results_leaderboard_size),
            }, code)])

    def request_end_game(self, game_code: Any, connection_id: str) -> Outcome:
        code = parse_game_code(game_code)
        with self.registry.locked(code) as game:
            self._require_host(game, connection_id)
            return Outcome(code, self._finish(game))

    def end_game(self, game_code: Any) -> Outcome:
        """Finalize a game; a second call is a no-op."""
        code = parse_game_code(game_code)
        with self.registry.locked(code) as game:
            return Outcome(code, self._finish(game))

    # ---- connection loss ----

    def disconnect(self, game_code: str, connection_id: str) -> Outcome:
        code = parse_game_code(game_code)
        with self.registry.locked(code) as game:
            if game.status == STATUS_FINISHED:
                return Outcome(code)

            if connection_id == game.host_connection_id:
                if game.status in (STATUS_LOBBY, STATUS_PLAYING):
                    game.status = STATUS_PAUSED
                    self.persistence.submit('set-status', self.store.set_status, game.session_id, STATUS_PAUSED)
                game.participants.pop(connection_id, None)
                self.logger.info(f"[host-disconnected] code={code} status={game.status}")
                messages = [broadcast(ServerEvent.HOST_DISCONNECTED, {
                    'message': 'Host has disconnected. Game paused.',
                }, code)]
                messages.extend(self._check_completion(game))
                return Outcome(code, messages)

            participant = game.participants.pop(connection_id, None)
            if participant is None:
                return Outcome(code)
            self.logger.info(f"[player-left] code={code} nickname={participant.nickname} remaining={len(game.participants)}")
            messages = [broadcast(ServerEvent.PLAYER_LEFT, {
                'nickname': participant.nickname,
                'participantCount': len(game.participants),
            }, code)]
            messages.extend(self._check_completion(game))
            return Outcome(code, messages)

    def shutdown(self) -> None:
        self.persistence.shutdown()
        self.registry.clear()

    # ---- internals ----

    def _check_completion(self, game: LiveGame) -> list[Outbound]:
        if game.status not in (STATUS_PLAYING, STATUS_PAUSED):
            return []
        if not game.participants or (game.started and game.all_finished()):
            return self._finish(game)
        return []

    def _finish(self, game: LiveGame) -> list[Outbound]:
        if game.status == STATUS_FINISHED:
            self.logger.info(f"[end-skip] code={game.game_code} already finished")
            return []
        game.status = STATUS_FINISHED
        leaderboard = game.leaderboard(self.final_leaderboard_size)
        self.persistence.submit('mark-finished', self.store.mark_finished, game.session_id, utcnow())

        winner = leaderboard[0]['nickname'] if leaderboard else None
        for participant in game.participants.values():
            if participant.user_id is None:
                continue
            won = participant.nickname == winner
            self.persistence.submit('record-game-played', self.activity.record_game_played,
                                    participant.user_id, won, self.win_xp if won else self.play_xp)

        self.logger.info(f"[game-ended] code={game.game_code} players={len(game.participants)} winner={winner}")
        messages = [broadcast(ServerEvent.GAME_ENDED, {
            'leaderboard': leaderboard,
            'totalQuestions': game.total_questions,
            'quizTitle': game.quiz.title,
        }, game.game_code)]
        self.registry.schedule_eviction(game.game_code)
        return messages

    def _require_host(self, game: LiveGame, connection_id: str) -> None:
        if connection_id != game.host_connection_id:
            raise NotAuthorizedError('Not authorized')

    def _parse_nickname(self, value: Any, required: bool = True) -> Optional[str]:
        if value is None and not required:
            return None
        if not isinstance(value, str) or not value.strip():
            if not required:
                return None
            raise ValidationError('Nickname is required')
        nickname = value.strip()
        if len(nickname) > self.max_nickname_length:
            raise ValidationError(f'Nickname must be at most {self.max_nickname_length} characters')
        return nickname

    @staticmethod
    def _unique_nickname(game: LiveGame, nickname: str) -> str:
        candidate = nickname
        counter = 1
        while candidate in game.nicknames:
            candidate = f'{nickname}{counter}'
            counter += 1
        return candidate

    def _prepare_quiz(self, quiz: QuizContent, settings: GameSettings) -> QuizContent:
        """Apply the shuffle flags once for the whole room."""
        questions = list(quiz.questions)
        if settings.shuffle_questions:
            self.rng.shuffle(questions)
        if settings.shuffle_options:
            shuffled = []
            for question in questions:
                options = list(question.options)
                self.rng.shuffle(options)
                shuffled.append(dataclasses.replace(question, options=tuple(options)))
            questions = shuffled
        return dataclasses.replace(quiz, questions=tuple(questions))
