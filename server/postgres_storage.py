"""PostgreSQL storage implementation."""

import datetime
import json
import logging
import os
import threading

import psycopg2
from psycopg2.extras import RealDictCursor

from core.errors import StorageError
from core.interfaces import Storage

logger = logging.getLogger(__name__)

CONFIG_FILE = '~/.config/toeic-words/config.json'

WORD_COLUMNS = "id::text AS id, word, part_of_speech, meaning, example_sentence, translation, importance"
USER_WORD_COLUMNS = ("id::text AS id, user_id, word_id::text AS word_id, correct_count, "
                     "incorrect_count, correct_dates, registered_at")
QUESTION_COLUMNS = ("id::text AS id, question, translation, options, answer, explanation, "
                    "example_sentence, part_of_speech, category, importance, synonyms, level")
QUESTION_STATS_COLUMNS = ("id::text AS id, user_id, question_id::text AS question_id, "
                          "correct_count, incorrect_count, last_answered_at")


def _user_word_row(row: dict) -> dict:
    row = dict(row)
    row['correct_dates'] = [d.isoformat() for d in row.get('correct_dates') or []]
    return row


class PostgresStorage(Storage):
    """PostgreSQL-based storage implementation."""

    def __init__(self, config_file: str = None, db_url: str = None):
        self.config_file = config_file or os.path.expanduser(CONFIG_FILE)
        self.db_url = db_url or os.environ.get(
            'DATABASE_URL',
            'postgresql://localhost:5432/toeic_words'
        )
        self._conn = None
        self._initialized = False
        # One connection is shared by the event loop and executor threads
        self._lock = threading.RLock()

    @property
    def conn(self):
        """Lazy connection initialization."""
        if self._conn is None or self._conn.closed:
            self._conn = psycopg2.connect(self.db_url)
            if not self._initialized:
                self._init_db()
                self._initialized = True
        return self._conn

    def _init_db(self):
        """Create tables if they don't exist."""
        with self._conn.cursor() as cur:
            # Word catalog (shared across all users)
            cur.execute("""
                CREATE TABLE IF NOT EXISTS words_master (
                    id SERIAL PRIMARY KEY,
                    word VARCHAR(255) NOT NULL,
                    part_of_speech VARCHAR(100),
                    meaning TEXT,
                    example_sentence TEXT,
                    translation TEXT,
                    importance SMALLINT NOT NULL DEFAULT 3 CHECK (importance BETWEEN 1 AND 5),
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)
            cur.execute("""
                CREATE INDEX IF NOT EXISTS idx_words_master_word ON words_master(word)
            """)
            # Per-user ledger; the unique pair makes racing inserts fail
            cur.execute("""
                CREATE TABLE IF NOT EXISTS user_words (
                    id SERIAL PRIMARY KEY,
                    user_id VARCHAR(255) NOT NULL,
                    word_id INTEGER NOT NULL REFERENCES words_master(id),
                    correct_count INTEGER NOT NULL DEFAULT 0 CHECK (correct_count >= 0),
                    incorrect_count INTEGER NOT NULL DEFAULT 0,
                    correct_dates DATE[] NOT NULL DEFAULT '{}',
                    registered_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE (user_id, word_id)
                )
            """)
            cur.execute("""
                CREATE TABLE IF NOT EXISTS user_word_history (
                    id SERIAL PRIMARY KEY,
                    user_id VARCHAR(255) NOT NULL,
                    user_word_id INTEGER NOT NULL REFERENCES user_words(id) ON DELETE CASCADE,
                    is_correct BOOLEAN NOT NULL,
                    answered_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)
            cur.execute("""
                CREATE INDEX IF NOT EXISTS idx_user_word_history_user
                ON user_word_history(user_id, answered_at)
            """)
            cur.execute("""
                CREATE TABLE IF NOT EXISTS test_results (
                    id SERIAL PRIMARY KEY,
                    user_id VARCHAR(255) NOT NULL,
                    correct_count INTEGER NOT NULL,
                    accuracy REAL NOT NULL,
                    predicted_score INTEGER NOT NULL CHECK (predicted_score BETWEEN 0 AND 990),
                    weak_categories JSONB NOT NULL DEFAULT '[]',
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)
            cur.execute("""
                CREATE INDEX IF NOT EXISTS idx_test_results_user ON test_results(user_id, created_at)
            """)
            cur.execute("""
                CREATE TABLE IF NOT EXISTS test_result_items (
                    id SERIAL PRIMARY KEY,
                    result_id INTEGER NOT NULL REFERENCES test_results(id) ON DELETE CASCADE,
                    question TEXT NOT NULL,
                    correct_answer TEXT NOT NULL,
                    user_answer TEXT,
                    is_correct BOOLEAN NOT NULL,
                    part_of_speech VARCHAR(100),
                    category VARCHAR(255)
                )
            """)
            cur.execute("""
                CREATE TABLE IF NOT EXISTS ai_usage_log (
                    id SERIAL PRIMARY KEY,
                    user_id VARCHAR(255) NOT NULL,
                    used_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)
            cur.execute("""
                CREATE INDEX IF NOT EXISTS idx_ai_usage_log_user ON ai_usage_log(user_id, used_at)
            """)
            cur.execute("""
                CREATE TABLE IF NOT EXISTS subscriptions (
                    user_id VARCHAR(255) PRIMARY KEY,
                    is_active BOOLEAN NOT NULL DEFAULT FALSE,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)
            # Question bank (shared) and per-user answer history
            cur.execute("""
                CREATE TABLE IF NOT EXISTS toeic_questions (
                    id SERIAL PRIMARY KEY,
                    question TEXT NOT NULL,
                    translation TEXT,
                    options JSONB NOT NULL,
                    answer TEXT NOT NULL,
                    explanation TEXT,
                    example_sentence TEXT,
                    part_of_speech VARCHAR(100),
                    category VARCHAR(255),
                    importance SMALLINT NOT NULL DEFAULT 3 CHECK (importance BETWEEN 1 AND 5),
                    synonyms JSONB NOT NULL DEFAULT '[]',
                    level SMALLINT NOT NULL DEFAULT 2,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)
            cur.execute("""
                CREATE INDEX IF NOT EXISTS idx_toeic_questions_level ON toeic_questions(level)
            """)
            cur.execute("""
                CREATE TABLE IF NOT EXISTS user_question_history (
                    id SERIAL PRIMARY KEY,
                    user_id VARCHAR(255) NOT NULL,
                    question_id INTEGER NOT NULL REFERENCES toeic_questions(id) ON DELETE CASCADE,
                    correct_count INTEGER NOT NULL DEFAULT 0,
                    incorrect_count INTEGER NOT NULL DEFAULT 0,
                    last_answered_at TIMESTAMP,
                    UNIQUE (user_id, question_id)
                )
            """)
            cur.execute("""
                CREATE TABLE IF NOT EXISTS question_answer_history (
                    id SERIAL PRIMARY KEY,
                    user_id VARCHAR(255) NOT NULL,
                    question_id INTEGER NOT NULL REFERENCES toeic_questions(id) ON DELETE CASCADE,
                    user_answer TEXT,
                    is_correct BOOLEAN NOT NULL,
                    answer_time_ms INTEGER,
                    session_id VARCHAR(255),
                    answered_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)
            cur.execute("""
                CREATE TABLE IF NOT EXISTS learning_sessions (
                    id SERIAL PRIMARY KEY,
                    user_id VARCHAR(255) NOT NULL,
                    session_id VARCHAR(255) NOT NULL,
                    total_questions INTEGER NOT NULL DEFAULT 0,
                    correct_count INTEGER NOT NULL DEFAULT 0,
                    started_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE (user_id, session_id)
                )
            """)
            # API stats table
            cur.execute("""
                CREATE TABLE IF NOT EXISTS api_stats (
                    provider_name VARCHAR(100) PRIMARY KEY,
                    stats JSONB NOT NULL,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)
        self._conn.commit()

    def close(self):
        """Close the database connection."""
        if self._conn and not self._conn.closed:
            self._conn.close()

    def _fetch_one(self, query: str, params: tuple) -> dict | None:
        rows = self._fetch_all(query, params)
        return rows[0] if rows else None

    def _fetch_all(self, query: str, params: tuple) -> list[dict]:
        with self._lock:
            try:
                with self.conn.cursor(cursor_factory=RealDictCursor) as cur:
                    cur.execute(query, params)
                    rows = [dict(row) for row in cur.fetchall()]
                # End the read transaction so no other thread inherits it
                self.conn.commit()
                return rows
            except psycopg2.Error as e:
                logger.error(f"Query failed: {e}")
                self.conn.rollback()
                raise StorageError(str(e)) from e

    def _write(self, query: str, params: tuple, returning: bool = False) -> dict | None:
        with self._lock:
            try:
                with self.conn.cursor(cursor_factory=RealDictCursor) as cur:
                    cur.execute(query, params)
                    row = cur.fetchone() if returning else None
                self.conn.commit()
                return dict(row) if row else None
            except psycopg2.Error as e:
                logger.error(f"Write failed: {e}")
                self.conn.rollback()
                raise StorageError(str(e)) from e

    def load_config(self) -> dict:
        if not os.path.exists(self.config_file):
            raise FileNotFoundError(
                f"Config file not found at {self.config_file}\n"
                f'Please create it with: {{"gemini_api_key": "YOUR_API_KEY_HERE"}}'
            )
        with open(self.config_file, 'r') as f:
            return json.load(f)

    # Word store
    def find_word(self, word: str, example_sentence: str = None) -> dict | None:
        if example_sentence is None:
            return self._fetch_one(
                f"SELECT {WORD_COLUMNS} FROM words_master WHERE word = %s ORDER BY id LIMIT 1",
                (word,)
            )
        return self._fetch_one(
            f"""SELECT {WORD_COLUMNS} FROM words_master
                WHERE word = %s AND example_sentence = %s ORDER BY id LIMIT 1""",
            (word, example_sentence)
        )

    def get_word(self, word_id: str) -> dict | None:
        return self._fetch_one(
            f"SELECT {WORD_COLUMNS} FROM words_master WHERE id = %s", (int(word_id),)
        )

    def insert_word(self, word: dict) -> dict:
        return self._write(f"""
            INSERT INTO words_master (word, part_of_speech, meaning, example_sentence,
                                      translation, importance)
            VALUES (%s, %s, %s, %s, %s, %s)
            RETURNING {WORD_COLUMNS}
        """, (word['word'], word.get('part_of_speech'), word.get('meaning'),
              word.get('example_sentence'), word.get('translation'), word.get('importance', 3)),
            returning=True)

    # User word ledger
    def get_user_word(self, user_id: str, word_id: str) -> dict | None:
        row = self._fetch_one(
            f"SELECT {USER_WORD_COLUMNS} FROM user_words WHERE user_id = %s AND word_id = %s",
            (user_id, int(word_id))
        )
        return _user_word_row(row) if row else None

    def get_user_word_by_id(self, user_word_id: str) -> dict | None:
        row = self._fetch_one(
            f"SELECT {USER_WORD_COLUMNS} FROM user_words WHERE id = %s", (int(user_word_id),)
        )
        return _user_word_row(row) if row else None

    def list_user_words(self, user_id: str) -> list[dict]:
        rows = self._fetch_all(f"""
            SELECT uw.id::text AS id, uw.user_id, uw.word_id::text AS word_id, uw.correct_count,
                   uw.incorrect_count, uw.correct_dates, uw.registered_at,
                   wm.word, wm.part_of_speech, wm.meaning, wm.example_sentence,
                   wm.translation, wm.importance
            FROM user_words uw JOIN words_master wm ON wm.id = uw.word_id
            WHERE uw.user_id = %s
            ORDER BY uw.registered_at, uw.id
        """, (user_id,))
        result = []
        for row in rows:
            word = {key: row.pop(key) for key in
                    ('word', 'part_of_speech', 'meaning', 'example_sentence', 'translation', 'importance')}
            word['id'] = row['word_id']
            row = _user_word_row(row)
            row['word'] = word
            result.append(row)
        return result

    def insert_user_word(self, user_word: dict) -> dict:
        row = self._write(f"""
            INSERT INTO user_words (user_id, word_id, correct_count, incorrect_count,
                                    correct_dates, registered_at)
            VALUES (%s, %s, %s, %s, %s::date[], %s)
            RETURNING {USER_WORD_COLUMNS}
        """, (user_word['user_id'], int(user_word['word_id']), user_word.get('correct_count', 0),
              user_word.get('incorrect_count', 0), user_word.get('correct_dates') or [],
              user_word.get('registered_at')), returning=True)
        return _user_word_row(row)

    def update_user_word(self, user_word_id: str, correct_count: int,
                         incorrect_count: int, correct_dates: list[str]) -> None:
        self._write("""
            UPDATE user_words
            SET correct_count = %s, incorrect_count = %s, correct_dates = %s::date[]
            WHERE id = %s
        """, (correct_count, incorrect_count, correct_dates, int(user_word_id)))

    def insert_word_history(self, user_id: str, user_word_id: str, is_correct: bool,
                            answered_at: datetime.datetime) -> None:
        self._write("""
            INSERT INTO user_word_history (user_id, user_word_id, is_correct, answered_at)
            VALUES (%s, %s, %s, %s)
        """, (user_id, int(user_word_id), is_correct, answered_at))

    def list_word_history(self, user_id: str, since: datetime.datetime = None) -> list[dict]:
        return self._fetch_all("""
            SELECT user_word_id::text AS user_word_id, is_correct, answered_at
            FROM user_word_history
            WHERE user_id = %s AND (%s::timestamp IS NULL OR answered_at >= %s)
            ORDER BY answered_at, id
        """, (user_id, since, since))

    # Test results
    def insert_test_result(self, result: dict) -> dict:
        return self._write("""
            INSERT INTO test_results (user_id, correct_count, accuracy, predicted_score,
                                      weak_categories, created_at)
            VALUES (%s, %s, %s, %s, %s, %s)
            RETURNING id::text AS id, user_id, correct_count, accuracy, predicted_score,
                      weak_categories, created_at
        """, (result['user_id'], result['correct_count'], result['accuracy'],
              result['predicted_score'], json.dumps(result['weak_categories']),
              result.get('created_at')), returning=True)

    def insert_test_result_item(self, item: dict) -> None:
        self._write("""
            INSERT INTO test_result_items (result_id, question, correct_answer, user_answer,
                                           is_correct, part_of_speech, category)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
        """, (int(item['result_id']), item['question'], item['correct_answer'],
              item.get('user_answer'), item['is_correct'], item.get('part_of_speech'),
              item.get('category')))

    def get_latest_test_result(self, user_id: str) -> dict | None:
        return self._fetch_one("""
            SELECT id::text AS id, user_id, correct_count, accuracy, predicted_score,
                   weak_categories, created_at
            FROM test_results WHERE user_id = %s
            ORDER BY created_at DESC, id DESC LIMIT 1
        """, (user_id,))

    def list_test_result_items(self, result_id: str) -> list[dict]:
        return self._fetch_all("""
            SELECT result_id::text AS result_id, question, correct_answer, user_answer,
                   is_correct, part_of_speech, category
            FROM test_result_items WHERE result_id = %s ORDER BY id
        """, (int(result_id),))

    # Usage quota
    def count_usage_since(self, user_id: str, since: datetime.datetime) -> int:
        row = self._fetch_one(
            "SELECT COUNT(*) AS used FROM ai_usage_log WHERE user_id = %s AND used_at >= %s",
            (user_id, since)
        )
        return row['used'] if row else 0

    def record_usage(self, user_id: str) -> None:
        self._write("INSERT INTO ai_usage_log (user_id, used_at) VALUES (%s, %s)",
                    (user_id, datetime.datetime.now()))

    # Subscriptions
    def is_subscribed(self, user_id: str) -> bool:
        row = self._fetch_one(
            "SELECT is_active FROM subscriptions WHERE user_id = %s", (user_id,)
        )
        return bool(row and row['is_active'])

    def set_subscription(self, user_id: str, is_active: bool) -> None:
        self._write("""
            INSERT INTO subscriptions (user_id, is_active, updated_at)
            VALUES (%s, %s, CURRENT_TIMESTAMP)
            ON CONFLICT (user_id)
            DO UPDATE SET is_active = EXCLUDED.is_active, updated_at = CURRENT_TIMESTAMP
        """, (user_id, is_active))

    # Question bank
    def insert_bank_question(self, question: dict) -> dict:
        return self._write(f"""
            INSERT INTO toeic_questions (question, translation, options, answer, explanation,
                                         example_sentence, part_of_speech, category,
                                         importance, synonyms, level)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING {QUESTION_COLUMNS}
        """, (question['question'], question.get('translation'), json.dumps(question['options']),
              question['answer'], question.get('explanation'), question.get('example_sentence'),
              question.get('part_of_speech'), question.get('category'),
              question.get('importance', 3), json.dumps(question.get('synonyms') or []),
              question['level']), returning=True)

    def get_bank_question(self, question_id: str) -> dict | None:
        if not str(question_id).isdigit():
            return None
        return self._fetch_one(
            f"SELECT {QUESTION_COLUMNS} FROM toeic_questions WHERE id = %s", (int(question_id),)
        )

    def list_bank_questions(self, levels: list[int] = None,
                            categories: list[str] = None) -> list[dict]:
        return self._fetch_all(f"""
            SELECT {QUESTION_COLUMNS} FROM toeic_questions
            WHERE (%s::smallint[] IS NULL OR level = ANY(%s::smallint[]))
              AND (%s::text[] IS NULL OR category = ANY(%s::text[]))
            ORDER BY created_at DESC, id DESC
        """, (levels or None, levels or None, categories or None, categories or None))

    def get_question_stats(self, user_id: str, question_id: str) -> dict | None:
        return self._fetch_one(
            f"SELECT {QUESTION_STATS_COLUMNS} FROM user_question_history "
            f"WHERE user_id = %s AND question_id = %s",
            (user_id, int(question_id))
        )

    def list_question_stats(self, user_id: str) -> list[dict]:
        return self._fetch_all(
            f"SELECT {QUESTION_STATS_COLUMNS} FROM user_question_history WHERE user_id = %s ORDER BY id",
            (user_id,)
        )

    def insert_question_stats(self, stats: dict) -> dict:
        return self._write(f"""
            INSERT INTO user_question_history (user_id, question_id, correct_count,
                                               incorrect_count, last_answered_at)
            VALUES (%s, %s, %s, %s, %s)
            RETURNING {QUESTION_STATS_COLUMNS}
        """, (stats['user_id'], int(stats['question_id']), stats.get('correct_count', 0),
              stats.get('incorrect_count', 0), stats.get('last_answered_at')), returning=True)

    def update_question_stats(self, stats_id: str, correct_count: int, incorrect_count: int,
                              last_answered_at: datetime.datetime) -> None:
        self._write("""
            UPDATE user_question_history
            SET correct_count = %s, incorrect_count = %s, last_answered_at = %s
            WHERE id = %s
        """, (correct_count, incorrect_count, last_answered_at, int(stats_id)))

    def insert_question_answer(self, answer: dict) -> None:
        self._write("""
            INSERT INTO question_answer_history (user_id, question_id, user_answer, is_correct,
                                                 answer_time_ms, session_id, answered_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
        """, (answer['user_id'], int(answer['question_id']), answer.get('user_answer'),
              answer['is_correct'], answer.get('answer_time_ms'), answer.get('session_id'),
              answer['answered_at']))

    def get_learning_session(self, user_id: str, session_id: str) -> dict | None:
        return self._fetch_one("""
            SELECT user_id, session_id, total_questions, correct_count, started_at, updated_at
            FROM learning_sessions WHERE user_id = %s AND session_id = %s
        """, (user_id, session_id))

    def add_session_answer(self, user_id: str, session_id: str, is_correct: bool,
                           answered_at: datetime.datetime) -> None:
        self._write("""
            INSERT INTO learning_sessions (user_id, session_id, total_questions, correct_count,
                                           started_at, updated_at)
            VALUES (%s, %s, 1, %s, %s, %s)
            ON CONFLICT (user_id, session_id)
            DO UPDATE SET total_questions = learning_sessions.total_questions + 1,
                          correct_count = learning_sessions.correct_count + EXCLUDED.correct_count,
                          updated_at = EXCLUDED.updated_at
        """, (user_id, session_id, 1 if is_correct else 0, answered_at, answered_at))

    def delete_user_data(self, user_id: str) -> None:
        """Delete a user's rows in one transaction. Items and history cascade."""
        with self._lock:
            try:
                with self.conn.cursor() as cur:
                    cur.execute("DELETE FROM test_results WHERE user_id = %s", (user_id,))
                    cur.execute("DELETE FROM user_word_history WHERE user_id = %s", (user_id,))
                    cur.execute("DELETE FROM user_words WHERE user_id = %s", (user_id,))
                    cur.execute("DELETE FROM question_answer_history WHERE user_id = %s", (user_id,))
                    cur.execute("DELETE FROM user_question_history WHERE user_id = %s", (user_id,))
                    cur.execute("DELETE FROM learning_sessions WHERE user_id = %s", (user_id,))
                    cur.execute("DELETE FROM ai_usage_log WHERE user_id = %s", (user_id,))
                    cur.execute("DELETE FROM subscriptions WHERE user_id = %s", (user_id,))
                self.conn.commit()
            except psycopg2.Error as e:
                logger.error(f"Error deleting user data: {e}")
                self.conn.rollback()
                raise StorageError(str(e)) from e

    def load_api_stats(self, provider_name: str) -> dict | None:
        """Load API usage stats for a provider."""
        try:
            row = self._fetch_one(
                "SELECT stats FROM api_stats WHERE provider_name = %s", (provider_name,)
            )
        except StorageError as e:
            logger.error(f"Error loading API stats: {e}")
            return None
        return row['stats'] if row else None

    def save_api_stats(self, provider_name: str, stats: dict) -> None:
        """Save API usage stats for a provider."""
        self._write("""
            INSERT INTO api_stats (provider_name, stats, updated_at)
            VALUES (%s, %s, CURRENT_TIMESTAMP)
            ON CONFLICT (provider_name)
            DO UPDATE SET stats = EXCLUDED.stats, updated_at = CURRENT_TIMESTAMP
        """, (provider_name, json.dumps(stats)))
