"""Abstract base classes for dependency injection."""

import datetime
from abc import ABC, abstractmethod


class AIProvider(ABC):
    """Abstract base class for AI/LLM provider."""

    @abstractmethod
    def define_word(self, word: str) -> tuple[str, int]:
        """Ask for every sense of a word. Returns (raw_text, generation_time_ms)."""
        pass

    @abstractmethod
    def generate_quiz(self, count: int, weaknesses: list[str],
                      estimated_score: int) -> tuple[str, int]:
        """Ask for a batch of multiple-choice questions.
        Returns (raw_text, generation_time_ms). The text is expected to contain
        a JSON object with a 'questions' list."""
        pass


class Storage(ABC):
    """Abstract base class for the word store, ledger and collaborator stores.

    Rows are exchanged as plain dicts; core.models converts them.
    Write failures raise core.errors.StorageError.
    """

    @abstractmethod
    def load_config(self) -> dict:
        """Load configuration. Returns config dict."""
        pass

    # Word store
    @abstractmethod
    def find_word(self, word: str, example_sentence: str = None) -> dict | None:
        """Find a catalog word. With example_sentence, both must match."""
        pass

    @abstractmethod
    def get_word(self, word_id: str) -> dict | None:
        """Get a catalog word by id."""
        pass

    @abstractmethod
    def insert_word(self, word: dict) -> dict:
        """Insert a catalog word. Returns the stored row including its id."""
        pass

    # User word ledger
    @abstractmethod
    def get_user_word(self, user_id: str, word_id: str) -> dict | None:
        """Get the ledger row for (user, word)."""
        pass

    @abstractmethod
    def get_user_word_by_id(self, user_word_id: str) -> dict | None:
        """Get a ledger row by id."""
        pass

    @abstractmethod
    def list_user_words(self, user_id: str) -> list[dict]:
        """List all ledger rows for a user."""
        pass

    @abstractmethod
    def insert_user_word(self, user_word: dict) -> dict:
        """Insert a ledger row. Must fail on a duplicate (user_id, word_id)."""
        pass

    @abstractmethod
    def update_user_word(self, user_word_id: str, correct_count: int,
                         incorrect_count: int, correct_dates: list[str]) -> None:
        """Update the mastery counters of a ledger row."""
        pass

    @abstractmethod
    def insert_word_history(self, user_id: str, user_word_id: str, is_correct: bool,
                            answered_at: datetime.datetime) -> None:
        """Append an answer to the per-word history."""
        pass

    @abstractmethod
    def list_word_history(self, user_id: str, since: datetime.datetime = None) -> list[dict]:
        """List history rows for a user, oldest first."""
        pass

    # Test results
    @abstractmethod
    def insert_test_result(self, result: dict) -> dict:
        """Insert a test result. Returns the stored row including its id."""
        pass

    @abstractmethod
    def insert_test_result_item(self, item: dict) -> None:
        """Insert one graded question of a test result."""
        pass

    @abstractmethod
    def get_latest_test_result(self, user_id: str) -> dict | None:
        """Get the most recent test result for a user."""
        pass

    @abstractmethod
    def list_test_result_items(self, result_id: str) -> list[dict]:
        """List the graded questions of a test result."""
        pass

    # Usage quota
    @abstractmethod
    def count_usage_since(self, user_id: str, since: datetime.datetime) -> int:
        """Count generation events for a user at or after since."""
        pass

    @abstractmethod
    def record_usage(self, user_id: str) -> None:
        """Record a generation event for a user."""
        pass

    # Subscriptions
    @abstractmethod
    def is_subscribed(self, user_id: str) -> bool:
        """Check whether a user's subscription is active."""
        pass

    @abstractmethod
    def set_subscription(self, user_id: str, is_active: bool) -> None:
        """Set a user's subscription flag."""
        pass

    # Question bank
    @abstractmethod
    def insert_bank_question(self, question: dict) -> dict:
        """Store a validated question with its level. Returns the row including its id."""
        pass

    @abstractmethod
    def get_bank_question(self, question_id: str) -> dict | None:
        """Get a bank question by id; None for unknown or non-bank ids."""
        pass

    @abstractmethod
    def list_bank_questions(self, levels: list[int] = None,
                            categories: list[str] = None) -> list[dict]:
        """List bank questions, newest first, optionally filtered by level and category."""
        pass

    @abstractmethod
    def get_question_stats(self, user_id: str, question_id: str) -> dict | None:
        """Get a user's answer counts for one bank question."""
        pass

    @abstractmethod
    def list_question_stats(self, user_id: str) -> list[dict]:
        """List a user's answer counts for every bank question answered."""
        pass

    @abstractmethod
    def insert_question_stats(self, stats: dict) -> dict:
        """Insert answer counts. Must fail on a duplicate (user_id, question_id)."""
        pass

    @abstractmethod
    def update_question_stats(self, stats_id: str, correct_count: int, incorrect_count: int,
                              last_answered_at: datetime.datetime) -> None:
        pass

    @abstractmethod
    def insert_question_answer(self, answer: dict) -> None:
        """Append one answer to the per-question answer log."""
        pass

    @abstractmethod
    def get_learning_session(self, user_id: str, session_id: str) -> dict | None:
        pass

    @abstractmethod
    def add_session_answer(self, user_id: str, session_id: str, is_correct: bool,
                           answered_at: datetime.datetime) -> None:
        """Count one answer in a learning session, creating the session if needed."""
        pass

    @abstractmethod
    def delete_user_data(self, user_id: str) -> None:
        """Erase every per-user row (ledger, history, results, question history,
        sessions, usage, subscription). Catalog words and bank questions stay."""
        pass

    @abstractmethod
    def load_api_stats(self, provider_name: str) -> dict | None:
        """Load API usage stats for a provider. Returns stats dict or None."""
        pass

    @abstractmethod
    def save_api_stats(self, provider_name: str, stats: dict) -> None:
        """Save API usage stats for a provider."""
        pass
