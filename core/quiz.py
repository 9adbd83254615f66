"""Quiz generation, grading and score prediction."""

import datetime
import logging
import math
import time
import uuid

from .config import (
    OPTION_COUNT, DEFAULT_QUIZ_COUNT, MAX_QUIZ_COUNT,
    GENERATION_MAX_ATTEMPTS, GENERATION_RETRY_DELAY, FREE_DAILY_GENERATIONS,
    DEFAULT_PREDICTED_SCORE, MIN_SCORE, MAX_SCORE, SCORE_SWING, WEAK_CATEGORY_LIMIT
)
from .errors import StorageError, ValidationError
from .interfaces import AIProvider, Storage
from .models import QuizQuestion, QuizBatch, TestResult, TestResultItem, WordDefinition
from .utils import (
    clamp, extract_json, normalize_option_text, resolve_answer,
    fill_translation_placeholder, parse_importance, require_user_id
)
from .words import find_or_create_word, find_or_create_user_word, apply_answer

logger = logging.getLogger(__name__)

# Generator output uses camelCase, API clients send snake_case
_ALIASES = {
    'part_of_speech': ('part_of_speech', 'partOfSpeech'),
    'example_sentence': ('example_sentence', 'exampleSentence', 'example'),
}


def _field(raw: dict, name: str):
    for key in _ALIASES.get(name, (name,)):
        if key in raw:
            return raw[key]
    return None


def _non_empty(value) -> bool:
    return isinstance(value, str) and bool(value.strip())


def validate_question(raw) -> QuizQuestion | None:
    """Gate a candidate question. Returns None if it is unusable.

    Importance is clamped into 1-5 rather than rejected. Synonyms that are
    not strings are dropped.
    """
    if not isinstance(raw, dict):
        return None
    question = raw.get('question')
    translation = raw.get('translation')
    explanation = raw.get('explanation')
    part_of_speech = _field(raw, 'part_of_speech')
    if not all(_non_empty(v) for v in (question, translation, explanation, part_of_speech)):
        return None

    options = raw.get('options')
    if not isinstance(options, list) or len(options) != OPTION_COUNT:
        return None
    if not all(_non_empty(o) for o in options):
        return None

    answer = raw.get('answer')
    if not _non_empty(answer) or answer not in options:
        return None

    synonyms = raw.get('synonyms')
    if isinstance(synonyms, (list, tuple, set)):
        synonyms = {s for s in synonyms if isinstance(s, str)}
    else:
        synonyms = set()

    example = _field(raw, 'example_sentence')
    category = raw.get('category')
    level = raw.get('level')
    return QuizQuestion(
        question,
        translation,
        options,
        answer,
        explanation,
        part_of_speech,
        example_sentence=example if isinstance(example, str) else '',
        importance=parse_importance(raw.get('importance')),
        synonyms=synonyms,
        id=str(raw['id']) if raw.get('id') is not None else None,
        category=category if _non_empty(category) else None,
        level=level if isinstance(level, int) and not isinstance(level, bool) else None
    )


def normalize_generated(raw, index: int = 0) -> dict | None:
    """Clean up the generator's formatting quirks before validation.

    Option labels such as 'A) ' are stripped, a letter answer is resolved to
    its option text and blanks in the translation are filled with the answer.
    """
    if not isinstance(raw, dict):
        return None
    data = dict(raw)
    if isinstance(data.get('options'), list):
        data['options'] = [normalize_option_text(o) if isinstance(o, str) else o
                           for o in data['options']]
    options = data.get('options') if isinstance(data.get('options'), list) else []
    data['answer'] = resolve_answer(data.get('answer'), options)
    if isinstance(data.get('translation'), str):
        data['translation'] = fill_translation_placeholder(data['translation'], data['answer'])
    if data.get('id') is None:
        data['id'] = f"q_{uuid.uuid4().hex[:8]}_{index}"
    return data


def parse_questions(raw_text: str) -> list[QuizQuestion]:
    """Extract the question list from generator output and keep the valid ones.

    Raises ValueError when the output holds no parseable 'questions' list.
    """
    data = extract_json(raw_text)
    if not isinstance(data, dict) or not isinstance(data.get('questions'), list):
        raise ValueError("Payload has no 'questions' list")
    questions = []
    for i, raw in enumerate(data['questions']):
        question = validate_question(normalize_generated(raw, i))
        if question:
            questions.append(question)
        else:
            logger.debug(f"Dropped invalid question #{i}: {raw}")
    dropped = len(data['questions']) - len(questions)
    if dropped:
        logger.info(f"Dropped {dropped} of {len(data['questions'])} generated questions")
    return questions


def grade(questions: list[QuizQuestion], selected: list) -> list[TestResultItem]:
    """Grade selected option letters against each question's answer.

    Correctness is exact string equality with the answer.
    """
    if len(selected) != len(questions):
        raise ValidationError("selected must have one entry per question")
    items = []
    for question, label in zip(questions, selected):
        user_answer = question.option_for(label)
        is_correct = user_answer == question.answer
        if (not is_correct and user_answer
                and user_answer.strip().casefold() == question.answer.strip().casefold()):
            logger.warning(f"Answer matched only after normalization: "
                           f"{user_answer!r} vs {question.answer!r}")
        items.append(TestResultItem(
            question.question,
            question.answer,
            user_answer,
            is_correct,
            question.part_of_speech,
            category=question.category
        ))
    return items


def compute_accuracy(items: list[TestResultItem]) -> float:
    if not items:
        return 0.0
    return sum(1 for item in items if item.is_correct) / len(items)


def predict_score(prior_score: int, accuracy: float) -> int:
    """Nudge the prior estimate by (accuracy - 0.5) * SCORE_SWING, half-up rounded."""
    raw = prior_score + (accuracy - 0.5) * SCORE_SWING
    return int(clamp(math.floor(raw + 0.5), MIN_SCORE, MAX_SCORE))


def weak_categories(items: list[TestResultItem], limit: int = WEAK_CATEGORY_LIMIT) -> list[str]:
    """Parts of speech with the most misses; ties keep first-seen order."""
    misses: dict[str, int] = {}
    for item in items:
        if not item.is_correct:
            misses[item.part_of_speech] = misses.get(item.part_of_speech, 0) + 1
    ranked = sorted(misses.items(), key=lambda kv: kv[1], reverse=True)
    return [category for category, _ in ranked[:limit]]


def local_midnight(now: datetime.datetime = None) -> datetime.datetime:
    """Start of the server's local calendar day."""
    now = now or datetime.datetime.now()
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


class QuizRequest:
    """What to ask the generator for, resolved from the user's latest result."""

    def __init__(self, user_id: str, count: int, weaknesses: list[str], estimated_score: int):
        self.user_id = user_id
        self.count = count
        self.weaknesses = weaknesses
        self.estimated_score = estimated_score


class QuizEngine:
    """Generates quizzes within the free-tier quota and records graded submissions.

    Generation is split so that callers can run only the provider call
    (request_questions) off the storage thread: limit_batch, build_request,
    request_questions, complete. generate runs all four in order.
    """

    def __init__(self, storage: Storage, ai_provider: AIProvider = None,
                 max_attempts: int = GENERATION_MAX_ATTEMPTS,
                 retry_delay: float = GENERATION_RETRY_DELAY,
                 sleep=time.sleep, bank=None):
        self.storage = storage
        self.ai_provider = ai_provider
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self._sleep = sleep
        self.bank = bank  # core.bank.QuestionBank; generated questions are kept when set

    def latest_result(self, user_id: str) -> TestResult | None:
        row = self.storage.get_latest_test_result(require_user_id(user_id))
        return TestResult.from_dict(row) if row else None

    def prior_score(self, user_id: str) -> int:
        latest = self.latest_result(user_id)
        return latest.predicted_score if latest else DEFAULT_PREDICTED_SCORE

    def limit_reached(self, user_id: str, now: datetime.datetime = None) -> bool:
        """Free users get FREE_DAILY_GENERATIONS per local day; subscribers are unlimited."""
        if self.storage.is_subscribed(user_id):
            return False
        used = self.storage.count_usage_since(user_id, local_midnight(now))
        return used >= FREE_DAILY_GENERATIONS

    def limit_batch(self, user_id: str, now: datetime.datetime = None) -> QuizBatch | None:
        """The LIMIT_REACHED batch if the user may not generate now, else None."""
        user_id = require_user_id(user_id)
        if not self.limit_reached(user_id, now):
            return None
        logger.info(f"Free generation limit reached for {user_id}")
        return QuizBatch(QuizBatch.LIMIT_REACHED,
                         message="Free users can generate one quiz per day.")

    def build_request(self, user_id: str, count: int = DEFAULT_QUIZ_COUNT,
                      weaknesses: list[str] = None, estimated_score: int = None) -> QuizRequest:
        """Weaknesses and the estimated score default to the user's latest result."""
        user_id = require_user_id(user_id)
        count = clamp(int(count or DEFAULT_QUIZ_COUNT), 1, MAX_QUIZ_COUNT)
        latest = self.latest_result(user_id)
        if weaknesses is None:
            weaknesses = latest.weak_categories if latest else []
        if estimated_score is None:
            estimated_score = latest.predicted_score if latest else DEFAULT_PREDICTED_SCORE
        return QuizRequest(user_id, count, weaknesses, estimated_score)

    def request_questions(self, request: QuizRequest) -> list[QuizQuestion] | None:
        """Call the generator, retrying only on unparseable output.

        Transport errors raised by the provider propagate unchanged.
        Returns None when every attempt produced malformed output.
        Storage is not touched.
        """
        for attempt in range(1, self.max_attempts + 1):
            raw, ms = self.ai_provider.generate_quiz(request.count, request.weaknesses,
                                                     request.estimated_score)
            try:
                questions = parse_questions(raw)
                logger.info(f"Quiz attempt {attempt}: {len(questions)} valid questions in {ms}ms")
                return questions
            except ValueError as e:
                logger.warning(f"Quiz attempt {attempt}/{self.max_attempts} unparseable: {e}")
                logger.debug(f"Raw response:\n{raw}")
                if attempt < self.max_attempts:
                    self._sleep(self.retry_delay)
        return None

    def complete(self, request: QuizRequest, questions: list[QuizQuestion] | None) -> QuizBatch:
        """Record usage for a successful generation and keep its questions in the bank."""
        if not questions:
            return QuizBatch(QuizBatch.FAILED,
                             message="Could not generate valid questions. Please try again.")
        self.storage.record_usage(request.user_id)
        if self.bank is not None:
            self.bank.add_generated(questions, request.estimated_score)
        return QuizBatch(QuizBatch.OK, questions, message=f"Generated {len(questions)} questions")

    def generate(self, user_id: str, count: int = DEFAULT_QUIZ_COUNT,
                 weaknesses: list[str] = None, estimated_score: int = None,
                 now: datetime.datetime = None) -> QuizBatch:
        """Generate a quiz batch for a user."""
        limited = self.limit_batch(user_id, now)
        if limited:
            return limited
        request = self.build_request(user_id, count, weaknesses, estimated_score)
        return self.complete(request, self.request_questions(request))

    def submit(self, user_id: str, questions: list, selected: list,
               now: datetime.datetime = None) -> TestResult:
        """Grade a submission, store the result and update the user's ledger.

        The TestResult row is written first; a storage failure on any later
        step aborts the submission without removing it.
        """
        user_id = require_user_id(user_id)
        if not isinstance(questions, list) or not isinstance(selected, list):
            raise ValidationError("questions and selected must be lists")
        validated = []
        for i, raw in enumerate(questions):
            question = raw if isinstance(raw, QuizQuestion) else validate_question(raw)
            if question is None:
                raise ValidationError(f"Invalid question at index {i}")
            validated.append(question)

        now = now or datetime.datetime.now()
        items = grade(validated, selected)
        accuracy = compute_accuracy(items)
        result = TestResult(
            user_id,
            sum(1 for item in items if item.is_correct),
            accuracy,
            predict_score(self.prior_score(user_id), accuracy),
            weak_categories(items),
            created_at=now
        )

        try:
            result.id = self.storage.insert_test_result(result.to_dict())['id']
            for question, item in zip(validated, items):
                item.result_id = result.id
                self.storage.insert_test_result_item(item.to_dict())
                word = find_or_create_word(self.storage, WordDefinition(
                    question.answer,
                    part_of_speech=question.part_of_speech,
                    meaning=question.translation,
                    example_sentence=question.example_sentence,
                    translation=question.translation,
                    importance=question.importance
                ), match_example=False)
                progress = find_or_create_user_word(self.storage, user_id, word, now)
                apply_answer(self.storage, progress, item.is_correct, now)
                result.items.append(item)
            if self.bank is not None:
                self.bank.record_submission(user_id, validated, items, now)
        except StorageError as e:
            logger.error(f"Quiz submission failed for {user_id} (result {result.id}): {e}")
            raise

        logger.info(f"Stored result {result.id} for {user_id}: "
                    f"{result.correct_count}/{len(items)}, score {result.predicted_score}")
        return result
