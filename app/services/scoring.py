"""Points awarded when a recipient answers their open question.

Wrong answers always earn a flat 10 points and reset the winning streak.
Correct answers earn 100 plus a bonus that grows with the winning streak
(the streak *including* the answer being scored):

    1-2   no bonus
    3-6   +2 per win past 2
    7-13  8  + 3 per win past 6
    14-20 29 + 4 per win past 13
    21-29 57 + 5 per win past 20
    30+   102 + 7 per win past 29
"""

from __future__ import annotations

from typing import NamedTuple

BASE_POINTS = 100
TRY_POINTS = 10

# (first streak of tier, bonus carried into tier, bonus per win in tier)
_TIERS = (
    (30, 102, 7),
    (21, 57, 5),
    (14, 29, 4),
    (7, 8, 3),
    (3, 0, 2),
)


class PointsBreakdown(NamedTuple):
    total: int
    base: int
    streak_bonus: int
    message: str


def streak_bonus(winning_streak: int) -> int:
    for first, carried, per_win in _TIERS:
        if winning_streak >= first:
            return carried + (winning_streak - (first - 1)) * per_win
    return 0


def calculate_points(is_correct: bool, winning_streak: int) -> int:
    if not is_correct:
        return TRY_POINTS
    return BASE_POINTS + streak_bonus(winning_streak)


def winning_streak_message(winning_streak: int) -> str:
    if winning_streak >= 30:
        return "🔥🔥🔥🔥🔥 INCREDIBLE winning streak! Trivia legend!"
    if winning_streak >= 21:
        return "🔥🔥🔥🔥 Legendary winning streak! Quiz master!"
    if winning_streak >= 14:
        return "🔥🔥🔥 Amazing winning streak! Unstoppable!"
    if winning_streak >= 7:
        return "🔥🔥 Great winning streak! You're on fire!"
    if winning_streak >= 3:
        return "🔥 Nice winning streak! Keep it up!"
    return ""


def points_breakdown(is_correct: bool, winning_streak: int) -> PointsBreakdown:
    total = calculate_points(is_correct, winning_streak)
    if not is_correct:
        return PointsBreakdown(total, TRY_POINTS, 0, f"Score: +{TRY_POINTS} points for trying! 💪")
    bonus = total - BASE_POINTS
    message = f"Score: +{total} points"
    if bonus:
        message += f" ({BASE_POINTS} base + {bonus} winning bonus!)"
        extra = winning_streak_message(winning_streak)
        if extra:
            message += f"\n{extra}"
    return PointsBreakdown(total, BASE_POINTS, bonus, message)
