"""Spaced-repetition review scheduling."""

import datetime
import math
import random

from .config import (
    REVIEW_SCHEDULE, MAX_SCHEDULED_COUNT, MIN_IMPORTANCE, MAX_IMPORTANCE,
    DAILY_TARGET_FLOOR, DAILY_AVERAGE_WINDOW
)
from .models import UserWordProgress


def required_gap_days(correct_count: int) -> int:
    """Days that must pass since the last review, by consecutive correct count."""
    capped = min(max(correct_count, 0), MAX_SCHEDULED_COUNT)
    return REVIEW_SCHEDULE[capped]


def days_since_review(progress: UserWordProgress, today: datetime.date) -> int:
    """Whole days between the last review and today."""
    return (today - progress.last_review_date).days


def is_due(progress: UserWordProgress, today: datetime.date = None) -> bool:
    """Check whether a word's review gap has elapsed."""
    today = today or datetime.date.today()
    return days_since_review(progress, today) >= required_gap_days(progress.correct_count)


def importance_rank(progress: UserWordProgress) -> int:
    """Sort rank; anything outside the 1-5 scale ranks below every real tier."""
    importance = progress.importance
    if MIN_IMPORTANCE <= importance <= MAX_IMPORTANCE:
        return importance
    return 0


def shuffle(items: list, rng: random.Random = None) -> list:
    """Fisher-Yates shuffle into a new list."""
    rng = rng or random
    result = list(items)
    for i in range(len(result) - 1, 0, -1):
        j = rng.randint(0, i)
        result[i], result[j] = result[j], result[i]
    return result


def order_for_review(words: list[UserWordProgress], rng: random.Random = None) -> list[UserWordProgress]:
    """Shuffle, then stable-sort by importance descending.

    Within an importance tier the shuffled order is kept.
    """
    return sorted(shuffle(words, rng), key=importance_rank, reverse=True)


def due_words(words: list[UserWordProgress], today: datetime.date = None,
              rng: random.Random = None) -> list[UserWordProgress]:
    """Select the words due today and order them for presentation.

    An empty result means nothing is due.
    """
    today = today or datetime.date.today()
    due = [w for w in words if is_due(w, today)]
    return order_for_review(due, rng)


def next_review_date(progress: UserWordProgress) -> datetime.date:
    """Date the word next becomes due."""
    return progress.last_review_date + datetime.timedelta(days=required_gap_days(progress.correct_count))


class DailyProgress:
    """Correct review answers per day and the two daily targets."""

    PHASE_ONE = 'phase1'
    PHASE_TWO = 'phase2'
    FINISHED = 'finished'

    def __init__(self, daily_correct: dict[datetime.date, int], today: datetime.date = None):
        self.today_date = today or datetime.date.today()
        self.daily_correct = daily_correct

    @classmethod
    def from_history(cls, history: list[dict], today: datetime.date = None) -> 'DailyProgress':
        """Build from history rows ({is_correct, answered_at})."""
        counts: dict[datetime.date, int] = {}
        for row in history:
            if not row.get('is_correct'):
                continue
            answered_at = row['answered_at']
            if isinstance(answered_at, str):
                answered_at = datetime.datetime.fromisoformat(answered_at)
            day = answered_at.date() if isinstance(answered_at, datetime.datetime) else answered_at
            counts[day] = counts.get(day, 0) + 1
        return cls(counts, today)

    @property
    def today(self) -> int:
        return self.daily_correct.get(self.today_date, 0)

    @property
    def yesterday(self) -> int:
        """Yesterday's count, or the latest earlier day's if yesterday is missing."""
        yesterday_date = self.today_date - datetime.timedelta(days=1)
        if yesterday_date in self.daily_correct:
            return self.daily_correct[yesterday_date]
        earlier = [d for d in self.daily_correct if d < self.today_date]
        if not earlier:
            return 0
        return self.daily_correct[max(earlier)]

    @property
    def average(self) -> float:
        days = sorted(d for d in self.daily_correct if d <= self.today_date)[-DAILY_AVERAGE_WINDOW:]
        if not days:
            return 0.0
        return sum(self.daily_correct[d] for d in days) / len(days)

    def targets(self) -> tuple[int, int]:
        values = [self.yesterday, math.ceil(self.average)]
        return min(values), max(values + [DAILY_TARGET_FLOOR])

    @property
    def phase(self) -> str:
        first, second = self.targets()
        if self.today >= second:
            return self.FINISHED
        if self.today >= first:
            return self.PHASE_TWO
        return self.PHASE_ONE

    def to_dict(self) -> dict:
        first, second = self.targets()
        return {
            'today': self.today,
            'yesterday': self.yesterday,
            'average': round(self.average, 1),
            'first_target': first,
            'second_target': second,
            'phase': self.phase
        }
