"""Rejections raised by the game services.

Every subclass carries a short, player-safe message. The realtime adapter
turns any of them into a single ``error`` event for the requesting
connection; none of them end the connection or affect other players.
"""


class GameError(Exception):
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(GameError):
    """Malformed identifiers, codes or payload fields."""


class NotFoundError(GameError):
    """Unknown or expired game code, unknown quiz or session."""


class NotAuthorizedError(GameError):
    """Connection is not allowed to perform the action."""


class StateConflictError(GameError):
    """Action does not fit the current game or participant state."""


class AlreadyFinishedError(StateConflictError):
    pass


class StaleQuestionError(StateConflictError):
    pass


class DuplicateAnswerError(StateConflictError):
    pass


class DuplicateCodeError(StateConflictError):
    pass


# Shared by every lookup so a missing code and an expired one read the same.
GAME_NOT_FOUND = 'Game not found. Check the code and try again.'
