from .models import (
    WordDefinition, UserWordProgress, QuizQuestion, QuizBatch, TestResult, TestResultItem,
    QuestionStats
)
from .interfaces import AIProvider, Storage
from .errors import WordsError, StorageError, InvalidUserError, ValidationError
from .scheduler import due_words, is_due, required_gap_days, DailyProgress
from .quiz import (
    QuizEngine, QuizRequest, validate_question, parse_questions, grade, predict_score,
    weak_categories
)
from .bank import QuestionBank, score_to_level, MODES
from .words import WordBook
from .config import (
    REVIEW_SCHEDULE, MAX_SCHEDULED_COUNT,
    DEFAULT_PREDICTED_SCORE, MIN_SCORE, MAX_SCORE, WEAK_CATEGORY_LIMIT,
    GENERATION_MAX_ATTEMPTS, FREE_DAILY_GENERATIONS, FREE_WORD_LIMIT
)

__all__ = [
    'WordDefinition', 'UserWordProgress', 'QuizQuestion', 'QuizBatch',
    'TestResult', 'TestResultItem', 'QuestionStats',
    'AIProvider', 'Storage',
    'WordsError', 'StorageError', 'InvalidUserError', 'ValidationError',
    'due_words', 'is_due', 'required_gap_days', 'DailyProgress',
    'QuizEngine', 'QuizRequest', 'validate_question', 'parse_questions', 'grade',
    'predict_score', 'weak_categories',
    'WordBook', 'QuestionBank', 'score_to_level', 'MODES',
    'REVIEW_SCHEDULE', 'MAX_SCHEDULED_COUNT',
    'DEFAULT_PREDICTED_SCORE', 'MIN_SCORE', 'MAX_SCORE', 'WEAK_CATEGORY_LIMIT',
    'GENERATION_MAX_ATTEMPTS', 'FREE_DAILY_GENERATIONS', 'FREE_WORD_LIMIT'
]
