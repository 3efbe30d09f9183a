import math

DEFAULT_SCORING_WINDOW_MS = 30000
DEFAULT_MAX_POINTS = 1000


def calculate_score(is_correct: bool, response_time_ms: float, question_timer_ms: float,
                    max_points: int = DEFAULT_MAX_POINTS) -> int:
    """Points for one answer.

    Wrong answers earn nothing. A correct answer earns half of ``max_points``
    plus a time bonus that shrinks linearly over ``question_timer_ms``; answers
    arriving after the window keep the 50% floor.
    """
    if not is_correct:
        return 0
    if question_timer_ms <= 0:
        return int(max_points)
    time_bonus = max(0.0, (question_timer_ms - max(0.0, response_time_ms)) / question_timer_ms)
    # round half up
    return int(math.floor(max_points * (0.5 + 0.5 * time_bonus) + 0.5))
