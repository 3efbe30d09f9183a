"""Durable game session records.

Thin query/command layer over the SQLAlchemy models. Every write commits
on its own; on failure the session is rolled back and the
``SQLAlchemyError`` propagates to the caller (the write-behind queue logs
it, session creation surfaces it to the host).
"""

import random
from typing import Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError

from quizx import db
from quizx.models import (
    GameSession, Participant, ParticipantAnswer,
    SESSION_STATUSES, STATUS_FINISHED, STATUS_LOBBY, STATUS_PLAYING, utcnow,
)
from .errors import NotFoundError, ValidationError

GAME_CODE_LENGTH = 6


class SessionStore:
    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.SystemRandom()

    def generate_code(self, exclude: Iterable[str] = ()) -> str:
        """Generate a 6-digit code unused by any session that is not finished.

        ``exclude`` lets the caller reserve codes it still holds in memory.
        """
        reserved = set(exclude)
        while True:
            code = str(self.rng.randint(10 ** (GAME_CODE_LENGTH - 1), 10 ** GAME_CODE_LENGTH - 1))
            if code in reserved:
                continue
            clash = (
                GameSession.query
                .filter(GameSession.game_code == code, GameSession.status != STATUS_FINISHED)
                .first()
            )
            if not clash:
                return code

    def create(self, host_id: int, quiz_id: int, settings: dict, exclude: Iterable[str] = ()) -> GameSession:
        game_code = self.generate_code(exclude)
        session = GameSession(
            game_code=game_code,
            host_id=host_id,
            quiz_id=quiz_id,
            settings=dict(settings),
            status=STATUS_LOBBY,
            current_question_index=-1,
        )
        self._commit(session)
        return session

    def get(self, session_id: int) -> Optional[GameSession]:
        return db.session.get(GameSession, session_id)

    def find_joinable(self, game_code: str) -> Optional[GameSession]:
        return (
            GameSession.query
            .filter(GameSession.game_code == game_code,
                    GameSession.status.in_([STATUS_LOBBY, STATUS_PLAYING]))
            .order_by(GameSession.id.desc())
            .first()
        )

    def host_history(self, host_id: int, page: int, per_page: int):
        return (
            GameSession.query
            .filter_by(host_id=host_id)
            .order_by(GameSession.created_at.desc(), GameSession.id.desc())
            .paginate(page=page, per_page=per_page, error_out=False)
        )

    def append_participant(self, session_id: int, nickname: str, connection_id: str,
                           user_id: Optional[int] = None, joined_at=None) -> Participant:
        session = self._require(session_id)
        participant = Participant(
            nickname=nickname,
            connection_id=connection_id,
            user_id=user_id,
            score=0,
            joined_at=joined_at or utcnow(),
        )
        session.participants.append(participant)
        session.refresh_stats()
        self._commit(session)
        return participant

    def record_participant_score(self, session_id: int, connection_id: str, score: int,
                                 question_index: int, answer, is_correct: bool,
                                 time_ms: int, points_earned: int) -> None:
        session = self._require(session_id)
        participant = next((p for p in session.participants if p.connection_id == connection_id), None)
        if participant is None:
            raise NotFoundError(f'No participant {connection_id} in session {session_id}')
        participant.score = score
        participant.answers.append(ParticipantAnswer(
            question_index=question_index,
            answer=None if answer is None else str(answer),
            is_correct=is_correct,
            time_ms=int(time_ms),
            points_earned=points_earned,
        ))
        session.refresh_stats()
        self._commit(session)

    def mark_started(self, session_id: int, started_at=None) -> None:
        session = self._require(session_id)
        session.status = STATUS_PLAYING
        session.started_at = started_at or utcnow()
        session.current_question_index = 0
        session.question_started_at = session.started_at
        self._commit(session)

    def set_status(self, session_id: int, status: str) -> None:
        if status not in SESSION_STATUSES:
            raise ValidationError(f'Unknown session status {status}')
        session = self._require(session_id)
        session.status = status
        self._commit(session)

    def set_current_question(self, session_id: int, index: int, started_at=None) -> None:
        session = self._require(session_id)
        session.current_question_index = index
        session.question_started_at = started_at or utcnow()
        self._commit(session)

    def mark_finished(self, session_id: int, ended_at=None) -> None:
        session = self._require(session_id)
        session.status = STATUS_FINISHED
        session.ended_at = ended_at or utcnow()
        session.refresh_stats()
        self._commit(session)

    def _require(self, session_id: int) -> GameSession:
        session = self.get(session_id)
        if session is None:
            raise NotFoundError(f'Game session {session_id} not found')
        return session

    def _commit(self, obj) -> None:
        try:
            db.session.add(obj)
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise
