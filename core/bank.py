"""Question bank: stored questions, per-question answer history and smart selection.

Generated questions are kept in the bank at a level derived from the
estimated score. Each user's answers per question drive a second
forgetting curve (longer than the word ledger's) and a priority score
used to pick questions for practice.
"""

import datetime
import logging
import random

from .config import (
    QUESTION_REVIEW_INTERVALS, MAX_QUESTION_INTERVAL_COUNT, NEVER_ANSWERED_DAYS,
    DUE_PRIORITY_BONUS, STALENESS_BONUS_CAP, SELECTION_POOL_FACTOR,
    WEAKNESS_MIN_ATTEMPTS, WEAKNESS_MAX_CORRECT_RATE, CATEGORY_MIN_ATTEMPTS,
    CATEGORY_ANALYSIS_LIMIT, LEVEL_SCORE_THRESHOLDS, DEFAULT_QUIZ_COUNT, MAX_QUIZ_COUNT,
    DEFAULT_PREDICTED_SCORE
)
from .errors import ValidationError
from .interfaces import Storage
from .models import QuizQuestion, QuestionStats, TestResultItem
from .quiz import validate_question
from .scheduler import shuffle
from .utils import clamp, require_user_id

logger = logging.getLogger(__name__)

MODE_QUICK = 'quick'        # Due or never answered, highest priority first
MODE_FOCUS = 'focus'        # Everything, most important first
MODE_WEAKNESS = 'weakness'  # Answered often enough and still mostly missed
MODE_REVIEW = 'review'      # Answered before and due again
MODES = (MODE_QUICK, MODE_FOCUS, MODE_WEAKNESS, MODE_REVIEW)


def question_interval_days(correct_count: int) -> int:
    capped = min(max(correct_count, 0), MAX_QUESTION_INTERVAL_COUNT)
    return QUESTION_REVIEW_INTERVALS[capped]


def days_since_answer(stats: QuestionStats | None, now: datetime.datetime) -> int:
    if stats is None or stats.last_answered_at is None:
        return NEVER_ANSWERED_DAYS
    return (now - stats.last_answered_at).days


def is_question_due(stats: QuestionStats | None, now: datetime.datetime) -> bool:
    """Never-answered questions are always due."""
    if stats is None or stats.last_answered_at is None:
        return True
    return days_since_answer(stats, now) >= question_interval_days(stats.correct_count)


def calculate_priority(importance: int, correct_rate: float, days_since: int, due: bool) -> float:
    """importance * (1 - correct rate), plus a bonus when due and up to
    STALENESS_BONUS_CAP for each week since the last answer."""
    score = importance * (1 - correct_rate)
    if due:
        score += DUE_PRIORITY_BONUS
    return score + min(days_since / 7, STALENESS_BONUS_CAP)


def score_to_level(score: int) -> int:
    """Map a TOEIC score to a bank level (1 beginner .. 4 advanced)."""
    for level, bound in enumerate(LEVEL_SCORE_THRESHOLDS, 1):
        if score < bound:
            return level
    return len(LEVEL_SCORE_THRESHOLDS) + 1


class ScoredQuestion:
    """A bank question with the user's stats, due flag and priority."""

    def __init__(self, question: QuizQuestion, stats: QuestionStats | None,
                 now: datetime.datetime):
        self.question = question
        self.stats = stats
        self.due = is_question_due(stats, now)
        self.priority = calculate_priority(
            question.importance,
            stats.correct_rate if stats else 0.0,
            days_since_answer(stats, now),
            self.due
        )


def _by_priority(scored: list[ScoredQuestion]) -> list[ScoredQuestion]:
    return sorted(scored, key=lambda s: s.priority, reverse=True)


def rank_for_mode(scored: list[ScoredQuestion], mode: str) -> list[ScoredQuestion]:
    """Filter and order candidates for a practice mode. Sorts are stable."""
    if mode == MODE_QUICK:
        return _by_priority([s for s in scored if s.due])
    if mode == MODE_FOCUS:
        return sorted(scored, key=lambda s: (s.question.importance, s.priority), reverse=True)
    if mode == MODE_WEAKNESS:
        return _by_priority([
            s for s in scored
            if s.stats and s.stats.attempts >= WEAKNESS_MIN_ATTEMPTS
            and s.stats.correct_rate < WEAKNESS_MAX_CORRECT_RATE
        ])
    if mode == MODE_REVIEW:
        return _by_priority([s for s in scored if s.stats and s.due])
    raise ValidationError(f"Unknown mode: {mode}")


def select_questions(scored: list[ScoredQuestion], mode: str, count: int,
                     rng: random.Random = None) -> list[QuizQuestion]:
    """Take the top count * SELECTION_POOL_FACTOR candidates, shuffle, keep count."""
    ranked = rank_for_mode(scored, mode)
    pool = shuffle(ranked[:count * SELECTION_POOL_FACTOR], rng)
    return [s.question for s in pool[:count]]


def category_accuracy(questions_by_id: dict[str, QuizQuestion],
                      stats_list: list[QuestionStats]) -> list[dict]:
    """Correct rate per category, weakest first.

    Categories answered fewer than CATEGORY_MIN_ATTEMPTS times are left out.
    """
    totals: dict[str, dict] = {}
    for stats in stats_list:
        question = questions_by_id.get(stats.question_id)
        if question is None:
            continue
        entry = totals.setdefault(question.category,
                                  {'category': question.category, 'correct': 0, 'incorrect': 0})
        entry['correct'] += stats.correct_count
        entry['incorrect'] += stats.incorrect_count

    rows = []
    for entry in totals.values():
        total = entry['correct'] + entry['incorrect']
        if total < CATEGORY_MIN_ATTEMPTS:
            continue
        rows.append(dict(entry, total=total, correct_rate=entry['correct'] / total))
    rows.sort(key=lambda row: row['correct_rate'])
    return rows[:CATEGORY_ANALYSIS_LIMIT]


def _is_weak(question: QuizQuestion, weak_categories: list[str]) -> bool:
    return question.category in weak_categories or question.part_of_speech in weak_categories


def draw_for_level(questions: list[QuizQuestion], weak_categories: list[str], count: int,
                   rng: random.Random = None) -> list[QuizQuestion]:
    """Random draw: up to half from weak categories, the rest from the others."""
    rng = rng or random
    weak_pool = [q for q in questions if _is_weak(q, weak_categories)]
    normal_pool = [q for q in questions if not _is_weak(q, weak_categories)]
    selected = []
    for _ in range(count // 2):
        if not weak_pool:
            break
        selected.append(weak_pool.pop(rng.randrange(len(weak_pool))))
    while len(selected) < count and normal_pool:
        selected.append(normal_pool.pop(rng.randrange(len(normal_pool))))
    return selected


def record_question_answer(storage: Storage, user_id: str, question_id: str, user_answer: str,
                           is_correct: bool, now: datetime.datetime = None,
                           answer_time_ms: int = None, session_id: str = None) -> QuestionStats:
    """Log one answer, update the user's counts for the question and the session."""
    now = now or datetime.datetime.now()
    storage.insert_question_answer({
        'user_id': user_id,
        'question_id': question_id,
        'user_answer': user_answer,
        'is_correct': is_correct,
        'answer_time_ms': answer_time_ms,
        'session_id': session_id,
        'answered_at': now
    })
    row = storage.get_question_stats(user_id, question_id)
    if row:
        stats = QuestionStats.from_dict(row)
        stats.record(is_correct, now)
        storage.update_question_stats(stats.id, stats.correct_count, stats.incorrect_count, now)
    else:
        stats = QuestionStats(user_id, question_id)
        stats.record(is_correct, now)
        stats.id = storage.insert_question_stats(stats.to_dict())['id']
    if session_id:
        storage.add_session_answer(user_id, session_id, is_correct, now)
    return stats


class QuestionBank:
    """Stored questions and per-user question history."""

    def __init__(self, storage: Storage):
        self.storage = storage

    def _load(self, rows: list[dict]) -> list[QuizQuestion]:
        questions = []
        for row in rows:
            question = validate_question(row)
            if question:
                questions.append(question)
            else:
                logger.warning(f"Skipping malformed bank question {row.get('id')}")
        return questions

    def add(self, questions: list[QuizQuestion], level: int) -> list[QuizQuestion]:
        """Store questions at a level. Their ids are replaced by bank ids."""
        for question in questions:
            data = question.to_dict()
            data.pop('id')
            data['level'] = level
            question.id = self.storage.insert_bank_question(data)['id']
            question.level = level
        logger.info(f"Added {len(questions)} questions to the bank at level {level}")
        return questions

    def add_generated(self, questions: list[QuizQuestion], estimated_score: int) -> list[QuizQuestion]:
        return self.add(questions, score_to_level(estimated_score))

    def get(self, question_id: str) -> QuizQuestion | None:
        row = self.storage.get_bank_question(question_id)
        return validate_question(row) if row else None

    def random_question(self, rng: random.Random = None) -> QuizQuestion | None:
        questions = self._load(self.storage.list_bank_questions())
        if not questions:
            return None
        return (rng or random).choice(questions)

    def _stats_by_question(self, user_id: str) -> dict[str, QuestionStats]:
        stats = [QuestionStats.from_dict(row) for row in self.storage.list_question_stats(user_id)]
        return {s.question_id: s for s in stats}

    def smart_questions(self, user_id: str, mode: str = MODE_QUICK,
                        count: int = DEFAULT_QUIZ_COUNT, categories: list[str] = None,
                        levels: list[int] = None, now: datetime.datetime = None,
                        rng: random.Random = None) -> list[QuizQuestion]:
        """Pick practice questions for a mode from the (optionally filtered) bank."""
        user_id = require_user_id(user_id)
        if mode not in MODES:
            raise ValidationError(f"Unknown mode: {mode}")
        count = clamp(int(count or DEFAULT_QUIZ_COUNT), 1, MAX_QUIZ_COUNT)
        now = now or datetime.datetime.now()
        questions = self._load(self.storage.list_bank_questions(levels, categories))
        stats = self._stats_by_question(user_id)
        scored = [ScoredQuestion(q, stats.get(q.id), now) for q in questions]
        return select_questions(scored, mode, count, rng)

    def weakness_analysis(self, user_id: str) -> list[dict]:
        user_id = require_user_id(user_id)
        questions = {q.id: q for q in self._load(self.storage.list_bank_questions())}
        return category_accuracy(questions, list(self._stats_by_question(user_id).values()))

    def draw(self, count: int = DEFAULT_QUIZ_COUNT,
             estimated_score: int = DEFAULT_PREDICTED_SCORE,
             weak_categories: list[str] = None, rng: random.Random = None) -> dict:
        """Draw stored questions at the score's level; 'missing' is how many the
        bank could not supply."""
        count = clamp(int(count or DEFAULT_QUIZ_COUNT), 1, MAX_QUIZ_COUNT)
        level = score_to_level(estimated_score)
        questions = self._load(self.storage.list_bank_questions(levels=[level]))
        selected = draw_for_level(questions, weak_categories or [], count, rng)
        return {'questions': selected, 'level': level, 'missing': count - len(selected)}

    def answer(self, user_id: str, question_id: str, user_answer: str, is_correct: bool,
               answer_time_ms: int = None, session_id: str = None,
               now: datetime.datetime = None) -> QuestionStats:
        user_id = require_user_id(user_id)
        if not self.storage.get_bank_question(question_id):
            raise ValidationError(f"Unknown question: {question_id}")
        return record_question_answer(self.storage, user_id, question_id, user_answer,
                                      is_correct, now, answer_time_ms, session_id)

    def answer_batch(self, user_id: str, answers: list[dict], session_id: str = None,
                     now: datetime.datetime = None) -> list[QuestionStats]:
        """Record several answers ({question_id, user_answer, is_correct, answer_time_ms})."""
        return [
            self.answer(user_id, a['question_id'], a.get('user_answer') or '', bool(a['is_correct']),
                        a.get('answer_time_ms'), session_id, now)
            for a in answers
        ]

    def record_submission(self, user_id: str, questions: list[QuizQuestion],
                          items: list[TestResultItem], now: datetime.datetime) -> int:
        """Feed graded quiz answers for bank questions into the question history.

        Questions that are not in the bank are skipped. Returns the number recorded.
        """
        recorded = 0
        for question, item in zip(questions, items):
            if question.id and self.storage.get_bank_question(question.id):
                record_question_answer(self.storage, user_id, question.id,
                                       item.user_answer, item.is_correct, now)
                recorded += 1
        return recorded
