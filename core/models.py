"""Domain models for the TOEIC words application."""

import datetime

from .config import DEFAULT_IMPORTANCE
from .utils import normalize_word, parse_importance, letter_to_index


def _parse_date(value) -> datetime.date:
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    return datetime.date.fromisoformat(str(value)[:10])


def _parse_datetime(value) -> datetime.datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime.datetime):
        return value
    if isinstance(value, datetime.date):
        return datetime.datetime.combine(value, datetime.time())
    return datetime.datetime.fromisoformat(str(value))


class WordDefinition:
    """A catalog entry shared across users."""

    def __init__(self, word: str, part_of_speech: str = '', meaning: str = '',
                 example_sentence: str = '', translation: str = '',
                 importance: int = DEFAULT_IMPORTANCE, id: str = None):
        self.id = id
        self.word = normalize_word(word)
        self.part_of_speech = part_of_speech
        self.meaning = meaning
        self.example_sentence = example_sentence
        self.translation = translation
        self.importance = parse_importance(importance)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'word': self.word,
            'part_of_speech': self.part_of_speech,
            'meaning': self.meaning,
            'example_sentence': self.example_sentence,
            'translation': self.translation,
            'importance': self.importance
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'WordDefinition':
        return cls(
            data['word'],
            part_of_speech=data.get('part_of_speech') or '',
            meaning=data.get('meaning') or '',
            example_sentence=data.get('example_sentence') or '',
            translation=data.get('translation') or '',
            importance=data.get('importance', DEFAULT_IMPORTANCE),
            id=data.get('id')
        )


class UserWordProgress:
    """Per-user mastery state for one catalog word."""

    def __init__(self, user_id: str, word_id: str, correct_count: int = 0,
                 correct_dates: list = None, incorrect_count: int = 0,
                 registered_at: datetime.datetime = None, id: str = None,
                 word: WordDefinition = None):
        self.id = id
        self.user_id = user_id
        self.word_id = word_id
        self.correct_count = correct_count
        self.correct_dates = [_parse_date(d) for d in (correct_dates or [])]
        self.incorrect_count = incorrect_count
        self.registered_at = registered_at or datetime.datetime.now()
        self.word = word  # Joined catalog entry, if loaded

    @property
    def importance(self) -> int:
        """Importance of the joined word; 0 when no word is attached."""
        return self.word.importance if self.word else 0

    @property
    def last_review_date(self) -> datetime.date:
        """Most recent correct answer date, else the registration date."""
        if self.correct_dates:
            return max(self.correct_dates)
        return _parse_date(self.registered_at)

    def record_answer(self, is_correct: bool, today: datetime.date) -> None:
        """Apply one graded answer. A miss restarts the review ladder at zero."""
        if is_correct:
            self.correct_count += 1
            self.correct_dates.append(today)
        else:
            self.correct_count = 0
            self.incorrect_count += 1

    def to_dict(self) -> dict:
        data = {
            'id': self.id,
            'user_id': self.user_id,
            'word_id': self.word_id,
            'correct_count': self.correct_count,
            'correct_dates': [d.isoformat() for d in self.correct_dates],
            'incorrect_count': self.incorrect_count,
            'registered_at': self.registered_at.isoformat()
        }
        if self.word:
            data['word'] = self.word.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict) -> 'UserWordProgress':
        word = data.get('word')
        return cls(
            data['user_id'],
            data['word_id'],
            correct_count=data.get('correct_count') or 0,
            correct_dates=data.get('correct_dates') or [],
            incorrect_count=data.get('incorrect_count') or 0,
            registered_at=_parse_datetime(data.get('registered_at')),
            id=data.get('id'),
            word=WordDefinition.from_dict(word) if isinstance(word, dict) else None
        )


class QuizQuestion:
    """A validated multiple-choice question. Not persisted on its own."""

    def __init__(self, question: str, translation: str, options: list[str], answer: str,
                 explanation: str, part_of_speech: str, example_sentence: str = '',
                 importance: int = DEFAULT_IMPORTANCE, synonyms=None,
                 id: str = None, category: str = None, level: int = None):
        self.id = id
        self.question = question
        self.translation = translation
        self.options = list(options)
        self.answer = answer
        self.explanation = explanation
        self.part_of_speech = part_of_speech
        self.example_sentence = example_sentence
        self.importance = importance
        self.synonyms = set(synonyms or [])
        self.category = category or part_of_speech
        self.level = level  # Set once stored in the question bank

    def option_for(self, label) -> str:
        """Option text for a selected letter; '' if nothing valid was selected."""
        idx = letter_to_index(label)
        if idx is None or idx >= len(self.options):
            return ''
        return self.options[idx]

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'question': self.question,
            'translation': self.translation,
            'options': self.options,
            'answer': self.answer,
            'explanation': self.explanation,
            'part_of_speech': self.part_of_speech,
            'example_sentence': self.example_sentence,
            'importance': self.importance,
            'synonyms': sorted(self.synonyms),
            'category': self.category,
            'level': self.level
        }


class TestResultItem:
    """One graded question of a completed quiz."""

    __test__ = False  # Not a pytest test class

    def __init__(self, question: str, correct_answer: str, user_answer: str,
                 is_correct: bool, part_of_speech: str, category: str = None,
                 result_id: str = None):
        self.result_id = result_id
        self.question = question
        self.correct_answer = correct_answer
        self.user_answer = user_answer
        self.is_correct = is_correct
        self.part_of_speech = part_of_speech
        self.category = category

    def to_dict(self) -> dict:
        return {
            'result_id': self.result_id,
            'question': self.question,
            'correct_answer': self.correct_answer,
            'user_answer': self.user_answer,
            'is_correct': self.is_correct,
            'part_of_speech': self.part_of_speech,
            'category': self.category
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'TestResultItem':
        return cls(
            data['question'], data['correct_answer'], data.get('user_answer') or '',
            bool(data['is_correct']), data.get('part_of_speech') or '',
            category=data.get('category'), result_id=data.get('result_id')
        )


class TestResult:
    """Outcome of one quiz submission. Immutable once stored."""

    __test__ = False

    def __init__(self, user_id: str, correct_count: int, accuracy: float,
                 predicted_score: int, weak_categories: list[str],
                 created_at: datetime.datetime = None, id: str = None):
        self.id = id
        self.user_id = user_id
        self.correct_count = correct_count
        self.accuracy = accuracy
        self.predicted_score = predicted_score
        self.weak_categories = list(weak_categories)
        self.created_at = created_at or datetime.datetime.now()
        self.items: list[TestResultItem] = []

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'user_id': self.user_id,
            'correct_count': self.correct_count,
            'accuracy': self.accuracy,
            'predicted_score': self.predicted_score,
            'weak_categories': self.weak_categories,
            'created_at': self.created_at.isoformat()
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'TestResult':
        return cls(
            data['user_id'],
            data['correct_count'],
            float(data['accuracy']),
            int(data['predicted_score']),
            data.get('weak_categories') or [],
            created_at=_parse_datetime(data.get('created_at')),
            id=data.get('id')
        )


class QuizBatch:
    """Result of a quiz generation request."""

    OK = 'ok'
    LIMIT_REACHED = 'limit_reached'
    FAILED = 'failed'

    def __init__(self, status: str, questions: list[QuizQuestion] = None, message: str = ''):
        self.status = status
        self.questions = questions or []
        self.message = message

    @property
    def limit_reached(self) -> bool:
        return self.status == self.LIMIT_REACHED

    def to_dict(self) -> dict:
        return {
            'status': self.status,
            'questions': [q.to_dict() for q in self.questions],
            'limit_reached': self.limit_reached,
            'message': self.message
        }


class QuestionStats:
    """A user's answer counts for one bank question."""

    def __init__(self, user_id: str, question_id: str, correct_count: int = 0,
                 incorrect_count: int = 0, last_answered_at: datetime.datetime = None,
                 id: str = None):
        self.id = id
        self.user_id = user_id
        self.question_id = question_id
        self.correct_count = correct_count
        self.incorrect_count = incorrect_count
        self.last_answered_at = last_answered_at

    @property
    def attempts(self) -> int:
        return self.correct_count + self.incorrect_count

    @property
    def correct_rate(self) -> float:
        return self.correct_count / self.attempts if self.attempts else 0.0

    def record(self, is_correct: bool, now: datetime.datetime) -> None:
        """Count one answer. Unlike the word ledger, misses do not reset the count."""
        if is_correct:
            self.correct_count += 1
        else:
            self.incorrect_count += 1
        self.last_answered_at = now

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'user_id': self.user_id,
            'question_id': self.question_id,
            'correct_count': self.correct_count,
            'incorrect_count': self.incorrect_count,
            'last_answered_at': self.last_answered_at.isoformat() if self.last_answered_at else None
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'QuestionStats':
        return cls(
            data['user_id'],
            str(data['question_id']),
            correct_count=data.get('correct_count') or 0,
            incorrect_count=data.get('incorrect_count') or 0,
            last_answered_at=_parse_datetime(data.get('last_answered_at')),
            id=data.get('id')
        )
