"""Word catalog and per-user ledger operations."""

import datetime
import logging
import random

from .config import FREE_WORD_LIMIT
from .errors import StorageError, ValidationError
from .interfaces import AIProvider, Storage
from .models import WordDefinition, UserWordProgress
from .scheduler import due_words, DailyProgress
from .utils import extract_json, normalize_word, require_user_id

logger = logging.getLogger(__name__)


def parse_definitions(raw_text: str) -> list[WordDefinition]:
    """Parse generator output for a word lookup into catalog entries.

    Expects {"word": ..., "definitions": [{word, part_of_speech, meaning,
    example, translation, importance}]}. Entries without a word or meaning
    are skipped. Raises ValueError if no JSON object is present.
    """
    data = extract_json(raw_text)
    if not isinstance(data, dict):
        raise ValueError("Definition payload is not an object")
    headword = data.get('word') if isinstance(data.get('word'), str) else ''
    definitions = []
    for entry in data.get('definitions') or []:
        if not isinstance(entry, dict):
            continue
        word = entry.get('word') if isinstance(entry.get('word'), str) else headword
        meaning = entry.get('meaning')
        if not word or not word.strip() or not isinstance(meaning, str) or not meaning.strip():
            continue
        definitions.append(WordDefinition(
            word,
            part_of_speech=str(entry.get('part_of_speech') or ''),
            meaning=meaning.strip(),
            example_sentence=str(entry.get('example') or entry.get('example_sentence') or ''),
            translation=str(entry.get('translation') or ''),
            importance=entry.get('importance')
        ))
    return definitions


def find_or_create_word(storage: Storage, definition: WordDefinition,
                        match_example: bool = True) -> WordDefinition:
    """Look up a catalog word, inserting it if missing.

    With match_example the lookup key is (word, example_sentence) so
    different senses of a word get separate entries.
    """
    example = definition.example_sentence if match_example else None
    row = storage.find_word(definition.word, example)
    if row:
        return WordDefinition.from_dict(row)
    stored = storage.insert_word(definition.to_dict())
    logger.info(f"Added catalog word: {definition.word} ({definition.part_of_speech})")
    return WordDefinition.from_dict(stored)


def find_or_create_user_word(storage: Storage, user_id: str, word: WordDefinition,
                             now: datetime.datetime = None) -> UserWordProgress:
    """Look up the ledger row for (user, word), inserting a fresh one if missing.

    No locking: a concurrent insert of the same pair fails in the store.
    """
    row = storage.get_user_word(user_id, word.id)
    if row:
        progress = UserWordProgress.from_dict(row)
    else:
        progress = UserWordProgress(user_id, word.id, registered_at=now or datetime.datetime.now())
        progress.id = storage.insert_user_word(progress.to_dict())['id']
    progress.word = word
    return progress


def apply_answer(storage: Storage, progress: UserWordProgress, is_correct: bool,
                 now: datetime.datetime = None) -> UserWordProgress:
    """Update a ledger row for one answer and append it to the history."""
    now = now or datetime.datetime.now()
    progress.record_answer(is_correct, now.date())
    storage.update_user_word(
        progress.id,
        progress.correct_count,
        progress.incorrect_count,
        [d.isoformat() for d in progress.correct_dates]
    )
    storage.insert_word_history(progress.user_id, progress.id, is_correct, now)
    return progress


def load_user_words(storage: Storage, user_id: str) -> list[UserWordProgress]:
    """Load a user's ledger with catalog entries attached."""
    words = []
    for row in storage.list_user_words(user_id):
        progress = UserWordProgress.from_dict(row)
        if progress.word is None:
            word_row = storage.get_word(progress.word_id)
            if word_row:
                progress.word = WordDefinition.from_dict(word_row)
        words.append(progress)
    return words


class WordBook:
    """Word lookup, registration and spaced-repetition review for users."""

    def __init__(self, storage: Storage, ai_provider: AIProvider = None):
        self.storage = storage
        self.ai_provider = ai_provider

    def request_definition(self, word: str) -> str:
        """Ask the provider for a word's senses. Only the provider is touched."""
        if not isinstance(word, str) or not normalize_word(word):
            raise ValidationError("word missing")
        raw, ms = self.ai_provider.define_word(word.strip())
        logger.info(f"Definition for '{word}' generated in {ms}ms")
        return raw

    def store_definitions(self, raw: str) -> list[WordDefinition]:
        """Parse provider output and store each sense in the catalog."""
        definitions = parse_definitions(raw)
        return [find_or_create_word(self.storage, d) for d in definitions]

    def define(self, word: str) -> list[WordDefinition]:
        """Generate definitions for a word and store each sense in the catalog."""
        return self.store_definitions(self.request_definition(word))

    def register(self, user_id: str, word_ids: list[str],
                 now: datetime.datetime = None) -> dict:
        """Add catalog words to a user's ledger.

        Unsubscribed users are capped at FREE_WORD_LIMIT ledger words; going
        over returns limit_exceeded rather than raising.
        """
        user_id = require_user_id(user_id)
        if not word_ids:
            raise ValidationError("word_ids missing")
        existing = {row['word_id'] for row in self.storage.list_user_words(user_id)}

        if not self.storage.is_subscribed(user_id):
            remaining = FREE_WORD_LIMIT - len(existing)
            if len(existing) + len(word_ids) > FREE_WORD_LIMIT:
                return {
                    'success': False,
                    'limit_exceeded': True,
                    'remaining': max(remaining, 0),
                    'message': f"Free plan: only {max(remaining, 0)} more words can be saved",
                    'registered': []
                }

        now = now or datetime.datetime.now()
        registered = []
        for word_id in dict.fromkeys(word_ids):
            if word_id in existing:
                continue
            word_row = self.storage.get_word(word_id)
            if not word_row:
                raise ValidationError(f"Unknown word id: {word_id}")
            progress = find_or_create_user_word(
                self.storage, user_id, WordDefinition.from_dict(word_row), now
            )
            registered.append(progress)

        if not registered:
            return {
                'success': False,
                'limit_exceeded': False,
                'message': "All words are already saved",
                'registered': []
            }
        return {
            'success': True,
            'limit_exceeded': False,
            'message': f"Saved {len(registered)} words",
            'registered': registered
        }

    def list_words(self, user_id: str) -> list[UserWordProgress]:
        return load_user_words(self.storage, require_user_id(user_id))

    def review_queue(self, user_id: str, today: datetime.date = None,
                     rng: random.Random = None) -> list[UserWordProgress]:
        """Words due for review today, high importance first."""
        words = self.list_words(user_id)
        return due_words(words, today, rng)

    def answer_review(self, user_id: str, user_word_id: str, is_correct: bool,
                      now: datetime.datetime = None) -> UserWordProgress:
        """Apply a self-graded review answer to one of the user's ledger rows."""
        user_id = require_user_id(user_id)
        row = self.storage.get_user_word_by_id(user_word_id)
        if not row or row['user_id'] != user_id:
            raise ValidationError(f"Unknown user word: {user_word_id}")
        progress = UserWordProgress.from_dict(row)
        return apply_answer(self.storage, progress, is_correct, now)

    def daily_progress(self, user_id: str, today: datetime.date = None) -> DailyProgress:
        """Correct answers per day and today's targets."""
        user_id = require_user_id(user_id)
        today = today or datetime.date.today()
        since = datetime.datetime.combine(today, datetime.time()) - datetime.timedelta(days=60)
        return DailyProgress.from_history(self.storage.list_word_history(user_id, since), today)

    def erase_user(self, user_id: str) -> None:
        """Delete every per-user row. Catalog words stay."""
        user_id = require_user_id(user_id)
        try:
            self.storage.delete_user_data(user_id)
        except StorageError:
            logger.error(f"Account erasure failed for {user_id}")
            raise
        logger.info(f"Erased data for {user_id}")
