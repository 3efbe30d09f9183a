"""Adapters for the services the game engine consumes but does not own.

The quiz-content provider and the activity recorder live elsewhere in the
product; these SQLAlchemy-backed versions read and write the shared tables.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from quizx import db
from quizx.models import DailyActivity, Quiz


@dataclass(frozen=True)
class QuizQuestion:
    question_text: str
    options: tuple[str, ...]
    correct_answer: str
    explanation: Optional[str] = None


@dataclass(frozen=True)
class QuizContent:
    id: int
    title: str
    status: str
    owner_id: Optional[int]
    is_public: bool = False
    category: str = 'Other'
    questions: tuple[QuizQuestion, ...] = field(default_factory=tuple)

    @property
    def total_questions(self) -> int:
        return len(self.questions)

    def summary(self) -> dict:
        return {
            'title': self.title,
            'totalQuestions': self.total_questions,
            'category': self.category,
        }


class SqlQuizProvider:
    def get_quiz_by_id(self, quiz_id: int) -> Optional[QuizContent]:
        quiz = db.session.get(Quiz, quiz_id)
        if quiz is None:
            return None
        return QuizContent(
            id=quiz.id,
            title=quiz.title,
            status=quiz.status,
            owner_id=quiz.generated_by,
            is_public=bool(quiz.is_public),
            category=quiz.category or 'Other',
            questions=tuple(
                QuizQuestion(
                    question_text=q.question_text,
                    options=tuple(q.options or ()),
                    correct_answer=q.correct_answer,
                    explanation=q.explanation,
                )
                for q in quiz.questions
            ),
        )


class SqlActivityRecorder:
    def record_game_played(self, user_id: int, won: bool, xp_amount: int) -> None:
        try:
            activity = DailyActivity.get_today(user_id)
            activity.increment_game_played(won=won, xp=xp_amount)
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise
