from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

from .errors import ValidationError

# client key -> attribute
_FIELDS = {
    'questionTimer': 'question_timer',
    'pointsPerQuestion': 'points_per_question',
    'showLeaderboardAfterEach': 'show_leaderboard_after_each',
    'allowLateJoin': 'allow_late_join',
    'shuffleQuestions': 'shuffle_questions',
    'shuffleOptions': 'shuffle_options',
}
_INT_LIMITS = {
    'question_timer': (5, 600),
    'points_per_question': (1, 100000),
}


@dataclass(frozen=True)
class GameSettings:
    """Host-chosen options for one session."""

    question_timer: int = 20  # seconds, display hint only
    points_per_question: int = 1000
    show_leaderboard_after_each: bool = True
    allow_late_join: bool = False
    shuffle_questions: bool = False
    shuffle_options: bool = False

    @classmethod
    def from_payload(cls, payload: Any, question_timer: int = 20, points_per_question: int = 1000) -> 'GameSettings':
        if payload is None:
            payload = {}
        if not isinstance(payload, dict):
            raise ValidationError('Invalid game settings')
        values: dict[str, Any] = {
            'question_timer': question_timer,
            'points_per_question': points_per_question,
        }
        for key, value in payload.items():
            attr = _FIELDS.get(key) or (key if key in _FIELDS.values() else None)
            if attr is None or value is None:
                continue
            if attr in _INT_LIMITS:
                low, high = _INT_LIMITS[attr]
                if isinstance(value, bool) or not isinstance(value, int) or not low <= value <= high:
                    raise ValidationError(f'{key} must be a whole number between {low} and {high}')
            elif not isinstance(value, bool):
                raise ValidationError(f'{key} must be true or false')
            values[attr] = value
        return cls(**values)

    def to_dict(self) -> dict[str, Any]:
        """Durable form, keyed like the client sends it."""
        data = asdict(self)
        return {client: data[attr] for client, attr in _FIELDS.items()}
