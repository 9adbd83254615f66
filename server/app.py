"""FastAPI server for the TOEIC words application."""

import asyncio
import logging
import os
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

logger = logging.getLogger(__name__)

from core.bank import QuestionBank, MODE_QUICK
from core.config import (
    DEFAULT_QUIZ_COUNT, DEFAULT_PREDICTED_SCORE, REVIEW_SCHEDULE, FREE_DAILY_GENERATIONS,
    FREE_WORD_LIMIT
)
from core.errors import InvalidUserError, StorageError, ValidationError, WordsError
from core.interfaces import AIProvider, Storage
from core.models import UserWordProgress
from core.quiz import QuizEngine
from core.scheduler import next_review_date
from core.utils import require_user_id
from core.words import WordBook

from server.gemini_provider import GeminiProvider
from server.file_storage import FileStorage
from server.postgres_storage import PostgresStorage


# Pydantic models for API
class DefineRequest(BaseModel):
    word: str


class RegisterWordsRequest(BaseModel):
    user_id: Optional[str] = None
    word_ids: list[str]


class ReviewAnswerRequest(BaseModel):
    user_id: Optional[str] = None
    user_word_id: str
    is_correct: bool


class GenerateQuizRequest(BaseModel):
    user_id: Optional[str] = None
    count: int = DEFAULT_QUIZ_COUNT
    weaknesses: Optional[list[str]] = None
    estimated_score: Optional[int] = None


class SubmitQuizRequest(BaseModel):
    user_id: Optional[str] = None
    questions: list[dict]
    selected: list[str]


class SubscriptionRequest(BaseModel):
    user_id: Optional[str] = None
    is_active: bool


class SmartQuestionsRequest(BaseModel):
    user_id: Optional[str] = None
    mode: str = MODE_QUICK
    count: int = DEFAULT_QUIZ_COUNT
    categories: Optional[list[str]] = None
    levels: Optional[list[int]] = None


class DrawQuestionsRequest(BaseModel):
    count: int = DEFAULT_QUIZ_COUNT
    estimated_score: int = DEFAULT_PREDICTED_SCORE
    weak_categories: Optional[list[str]] = None


class QuestionAnswer(BaseModel):
    question_id: str
    user_answer: str = ''
    is_correct: bool
    answer_time_ms: Optional[int] = None


class QuestionAnswersRequest(BaseModel):
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    answers: list[QuestionAnswer]


class WordResponse(BaseModel):
    id: Optional[str]
    word: str
    part_of_speech: str
    meaning: str
    example_sentence: str
    translation: str
    importance: int


class QuizResponse(BaseModel):
    status: str
    questions: list[dict]
    limit_reached: bool
    message: str


class TestResultResponse(BaseModel):
    id: Optional[str]
    correct_count: int
    total: int
    accuracy: float
    predicted_score: int
    weak_categories: list[str]
    items: list[dict]


# Global state (in production, use proper DI)
storage: Storage = None
ai_provider: AIProvider = None
word_book: WordBook = None
quiz_engine: QuizEngine = None
question_bank: QuestionBank = None


def configure(new_storage: Storage, new_provider: AIProvider = None) -> None:
    """Wire storage and provider into the services used by the endpoints."""
    global storage, ai_provider, word_book, quiz_engine, question_bank
    storage = new_storage
    ai_provider = new_provider
    word_book = WordBook(storage, ai_provider)
    question_bank = QuestionBank(storage)
    quiz_engine = QuizEngine(storage, ai_provider, bank=question_bank)


app = FastAPI(title="TOEIC Words API", description="Vocabulary review and TOEIC quiz API")


@app.exception_handler(InvalidUserError)
async def invalid_user_handler(request: Request, exc: InvalidUserError):
    return JSONResponse(status_code=401, content={"detail": str(exc)})


@app.exception_handler(ValidationError)
async def validation_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError):
    logger.error(f"Storage error on {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"detail": f"Storage error: {exc}"})


@app.on_event("startup")
async def startup():
    """Initialize storage and AI provider on startup."""
    # Use PostgreSQL by default, set WORDS_STORAGE=file to use file storage
    storage_type = os.environ.get('WORDS_STORAGE', 'postgres')
    if storage_type == 'file':
        new_storage = FileStorage()
        print("Using file storage")
    else:
        new_storage = PostgresStorage()
        print("Using PostgreSQL storage")

    # Get API key from environment variable first, then fall back to config file
    api_key = os.environ.get('GEMINI_API_KEY')
    if not api_key:
        try:
            config = new_storage.load_config()
            api_key = config.get('gemini_api_key')
        except FileNotFoundError:
            pass

    if not api_key:
        raise RuntimeError(
            "GEMINI_API_KEY environment variable not set and config file not found. "
            "Set GEMINI_API_KEY or create ~/.config/toeic-words/config.json"
        )

    model_name = os.environ.get('GEMINI_MODEL', 'gemini-2.5-flash')
    configure(new_storage, GeminiProvider(api_key, model_name=model_name, storage=new_storage))
    print(f"AI provider initialized: {model_name}")


async def run_blocking(func, *args):
    """Run a provider call (AI request, retry sleeps) off the event loop.

    Only provider work goes here; storage calls stay on the loop thread.
    """
    loop = asyncio.get_event_loop()
    return await loop.run_in_executor(None, lambda: func(*args))


async def call_provider(func, *args):
    """run_blocking for provider calls; transport failures become a 502 with the cause."""
    try:
        return await run_blocking(func, *args)
    except WordsError:
        raise
    except Exception as e:
        logger.error(f"AI provider call {func.__name__} failed: {type(e).__name__}: {e}")
        raise HTTPException(status_code=502,
                            detail=f"AI provider error: {type(e).__name__}: {str(e)}")


def user_word_payload(progress: UserWordProgress) -> dict:
    data = progress.to_dict()
    data['next_review'] = next_review_date(progress).isoformat()
    return data


@app.get("/api/health")
async def health():
    """Health check for clients."""
    return {"status": "ok", "service": "toeic-words"}


@app.get("/api/config")
async def get_config():
    """Expose the review schedule and free-tier limits."""
    return {
        "review_schedule": REVIEW_SCHEDULE,
        "free_daily_generations": FREE_DAILY_GENERATIONS,
        "free_word_limit": FREE_WORD_LIMIT
    }


# Words
@app.post("/api/words/define", response_model=list[WordResponse])
async def define_word(request: DefineRequest):
    """Generate definitions for a word and store them in the catalog."""
    raw = await call_provider(word_book.request_definition, request.word)
    try:
        definitions = word_book.store_definitions(raw)
    except ValueError as e:
        logger.error(f"Unparseable definition for '{request.word}': {e}")
        raise HTTPException(status_code=502, detail="Could not read the generated definition")
    return [WordResponse(**d.to_dict()) for d in definitions]


@app.post("/api/words")
async def register_words(request: RegisterWordsRequest):
    """Add catalog words to the user's word list."""
    result = word_book.register(request.user_id, request.word_ids)
    result['registered'] = [p.to_dict() for p in result['registered']]
    return result


@app.get("/api/words")
async def list_words(user_id: Optional[str] = None):
    """List the user's words with their review state."""
    words = word_book.list_words(user_id)
    return {"total": len(words), "words": [user_word_payload(w) for w in words]}


# Review
@app.get("/api/review")
async def get_review(user_id: Optional[str] = None):
    """Words due for review today, most important first."""
    words = word_book.review_queue(user_id)
    return {
        "total": len(words),
        "nothing_due": not words,
        "words": [user_word_payload(w) for w in words]
    }


@app.post("/api/review/answer")
async def answer_review(request: ReviewAnswerRequest):
    """Record a review answer. A miss resets the word's streak."""
    progress = word_book.answer_review(request.user_id, request.user_word_id, request.is_correct)
    return user_word_payload(progress)


@app.get("/api/review/progress")
async def get_review_progress(user_id: Optional[str] = None):
    """Today's correct answers against the daily targets."""
    return word_book.daily_progress(user_id).to_dict()


# Quiz
@app.post("/api/quiz/generate", response_model=QuizResponse)
async def generate_quiz(request: GenerateQuizRequest):
    """Generate a quiz. Free users are limited per day."""
    user_id = require_user_id(request.user_id)
    batch = quiz_engine.limit_batch(user_id)
    if batch is None:
        quiz_request = quiz_engine.build_request(
            user_id, request.count, request.weaknesses, request.estimated_score
        )
        questions = await call_provider(quiz_engine.request_questions, quiz_request)
        batch = quiz_engine.complete(quiz_request, questions)
    return QuizResponse(**batch.to_dict())


@app.post("/api/quiz/submit", response_model=TestResultResponse)
async def submit_quiz(request: SubmitQuizRequest):
    """Grade a quiz and store the result."""
    result = quiz_engine.submit(request.user_id, request.questions, request.selected)
    return TestResultResponse(
        id=result.id,
        correct_count=result.correct_count,
        total=len(result.items),
        accuracy=result.accuracy,
        predicted_score=result.predicted_score,
        weak_categories=result.weak_categories,
        items=[item.to_dict() for item in result.items]
    )


@app.get("/api/results/latest")
async def get_latest_result(user_id: Optional[str] = None):
    """The user's most recent test result, or null."""
    result = quiz_engine.latest_result(user_id)
    if not result:
        return {"result": None}
    data = result.to_dict()
    data['items'] = storage.list_test_result_items(result.id)
    return {"result": data}


# Question bank
@app.post("/api/bank/smart")
async def smart_questions(request: SmartQuestionsRequest):
    """Practice questions from the bank for a mode: quick, focus, weakness or review."""
    questions = question_bank.smart_questions(
        request.user_id, request.mode, request.count, request.categories, request.levels
    )
    return {"mode": request.mode, "total": len(questions),
            "questions": [q.to_dict() for q in questions]}


@app.get("/api/bank/random")
async def random_question():
    """One random stored question, or null when the bank is empty."""
    question = question_bank.random_question()
    return {"question": question.to_dict() if question else None}


@app.post("/api/bank/draw")
async def draw_questions(request: DrawQuestionsRequest):
    """Stored questions at the score's level, half from weak categories."""
    drawn = question_bank.draw(request.count, request.estimated_score, request.weak_categories)
    return {
        "level": drawn['level'],
        "missing": drawn['missing'],
        "questions": [q.to_dict() for q in drawn['questions']]
    }


@app.post("/api/bank/answers")
async def save_question_answers(request: QuestionAnswersRequest):
    """Record answers to bank questions and update the learning session."""
    if not request.answers:
        raise ValidationError("answers missing")
    user_id = require_user_id(request.user_id)
    recorded = question_bank.answer_batch(
        user_id, [a.model_dump() for a in request.answers], request.session_id
    )
    response = {"success": True, "recorded": [s.to_dict() for s in recorded]}
    if request.session_id:
        response['session'] = storage.get_learning_session(user_id, request.session_id)
    return response


@app.get("/api/bank/weaknesses")
async def question_weaknesses(user_id: Optional[str] = None):
    """Categories with the lowest correct rate in the user's question history."""
    return {"categories": question_bank.weakness_analysis(user_id)}


# Account
@app.get("/api/subscription")
async def get_subscription(user_id: Optional[str] = None):
    user_id = require_user_id(user_id)
    return {"user_id": user_id, "is_active": storage.is_subscribed(user_id)}


@app.post("/api/subscription")
async def set_subscription(request: SubscriptionRequest):
    """Set the subscription flag (called by the billing integration)."""
    user_id = require_user_id(request.user_id)
    storage.set_subscription(user_id, request.is_active)
    logger.info(f"Subscription for {user_id} set to {request.is_active}")
    return {"user_id": user_id, "is_active": request.is_active}


@app.delete("/api/users/{user_id}")
async def delete_user(user_id: str):
    """Erase all of a user's data."""
    word_book.erase_user(user_id)
    return {"success": True}


@app.get("/api/stats")
async def get_api_stats():
    """Get Gemini API usage statistics."""
    if not hasattr(ai_provider, 'get_stats'):
        return {"error": "Statistics not available for the current provider"}
    return ai_provider.get_stats()


def create_app():
    """Factory function for creating the app (useful for testing)."""
    return app
