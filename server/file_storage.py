"""File-based storage implementation."""

import datetime
import json
import logging
import os

from core.errors import StorageError
from core.interfaces import Storage

logger = logging.getLogger(__name__)

CONFIG_FILE = '~/.config/toeic-words/config.json'
TABLES = ('words', 'user_words', 'word_history', 'test_results', 'test_result_items',
          'usage_log', 'subscriptions', 'api_stats', 'bank_questions', 'question_stats',
          'question_answers', 'learning_sessions')


class FileStorage(Storage):
    """JSON file storage for local use. One file holds every table."""

    def __init__(self, config_file: str = None, state_dir: str = None):
        self.config_file = config_file or os.path.expanduser(CONFIG_FILE)
        # Project root is one level up from server/
        project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
        self.state_dir = state_dir or project_root

    def _get_data_file(self) -> str:
        return os.path.join(self.state_dir, 'toeic_words_data.json')

    def _load(self) -> dict:
        data_file = self._get_data_file()
        data = {}
        if os.path.exists(data_file):
            try:
                with open(data_file, 'r') as f:
                    data = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                raise StorageError(f"Could not read {data_file}: {e}") from e
        for table in TABLES:
            data.setdefault(table, {} if table in ('subscriptions', 'api_stats') else [])
        data.setdefault('next_id', 1)
        return data

    def _save(self, data: dict) -> None:
        data_file = self._get_data_file()
        try:
            with open(data_file, 'w') as f:
                json.dump(data, f, indent=2, ensure_ascii=False, default=str)
        except OSError as e:
            raise StorageError(f"Could not write {data_file}: {e}") from e

    @staticmethod
    def _new_id(data: dict) -> str:
        new_id = data['next_id']
        data['next_id'] = new_id + 1
        return str(new_id)

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
        for row in self._load()['words']:
            if row['word'] != word:
                continue
            if example_sentence is None or row.get('example_sentence') == example_sentence:
                return row
        return None

    def get_word(self, word_id: str) -> dict | None:
        for row in self._load()['words']:
            if row['id'] == str(word_id):
                return row
        return None

    def insert_word(self, word: dict) -> dict:
        data = self._load()
        row = dict(word)
        row['id'] = self._new_id(data)
        data['words'].append(row)
        self._save(data)
        return row

    # User word ledger
    def get_user_word(self, user_id: str, word_id: str) -> dict | None:
        for row in self._load()['user_words']:
            if row['user_id'] == user_id and row['word_id'] == str(word_id):
                return row
        return None

    def get_user_word_by_id(self, user_word_id: str) -> dict | None:
        for row in self._load()['user_words']:
            if row['id'] == str(user_word_id):
                return row
        return None

    def list_user_words(self, user_id: str) -> list[dict]:
        data = self._load()
        words = {row['id']: row for row in data['words']}
        result = []
        for row in data['user_words']:
            if row['user_id'] == user_id:
                row = dict(row)
                if row['word_id'] in words:
                    row['word'] = words[row['word_id']]
                result.append(row)
        return result

    def insert_user_word(self, user_word: dict) -> dict:
        data = self._load()
        word_id = str(user_word['word_id'])
        for row in data['user_words']:
            if row['user_id'] == user_word['user_id'] and row['word_id'] == word_id:
                raise StorageError(
                    f"Duplicate user word: ({user_word['user_id']}, {word_id})"
                )
        row = {key: value for key, value in user_word.items() if key != 'word'}
        row['id'] = self._new_id(data)
        row['word_id'] = word_id
        data['user_words'].append(row)
        self._save(data)
        return row

    def update_user_word(self, user_word_id: str, correct_count: int,
                         incorrect_count: int, correct_dates: list[str]) -> None:
        data = self._load()
        for row in data['user_words']:
            if row['id'] == str(user_word_id):
                row['correct_count'] = correct_count
                row['incorrect_count'] = incorrect_count
                row['correct_dates'] = list(correct_dates)
                self._save(data)
                return
        raise StorageError(f"User word not found: {user_word_id}")

    def insert_word_history(self, user_id: str, user_word_id: str, is_correct: bool,
                            answered_at: datetime.datetime) -> None:
        data = self._load()
        data['word_history'].append({
            'user_id': user_id,
            'user_word_id': str(user_word_id),
            'is_correct': is_correct,
            'answered_at': answered_at.isoformat()
        })
        self._save(data)

    def list_word_history(self, user_id: str, since: datetime.datetime = None) -> list[dict]:
        rows = []
        for row in self._load()['word_history']:
            if row['user_id'] != user_id:
                continue
            if since and datetime.datetime.fromisoformat(row['answered_at']) < since:
                continue
            rows.append(row)
        return rows

    # Test results
    def insert_test_result(self, result: dict) -> dict:
        data = self._load()
        row = dict(result)
        row['id'] = self._new_id(data)
        data['test_results'].append(row)
        self._save(data)
        return row

    def insert_test_result_item(self, item: dict) -> None:
        data = self._load()
        data['test_result_items'].append(dict(item))
        self._save(data)

    def get_latest_test_result(self, user_id: str) -> dict | None:
        rows = [row for row in self._load()['test_results'] if row['user_id'] == user_id]
        if not rows:
            return None
        # Ids increase with insertion order
        return max(rows, key=lambda row: (row['created_at'], int(row['id'])))

    def list_test_result_items(self, result_id: str) -> list[dict]:
        return [row for row in self._load()['test_result_items']
                if row['result_id'] == str(result_id)]

    # Usage quota
    def count_usage_since(self, user_id: str, since: datetime.datetime) -> int:
        return sum(
            1 for row in self._load()['usage_log']
            if row['user_id'] == user_id
            and datetime.datetime.fromisoformat(row['used_at']) >= since
        )

    def record_usage(self, user_id: str) -> None:
        data = self._load()
        data['usage_log'].append({
            'user_id': user_id,
            'used_at': datetime.datetime.now().isoformat()
        })
        self._save(data)

    # Subscriptions
    def is_subscribed(self, user_id: str) -> bool:
        return bool(self._load()['subscriptions'].get(user_id, False))

    def set_subscription(self, user_id: str, is_active: bool) -> None:
        data = self._load()
        data['subscriptions'][user_id] = is_active
        self._save(data)

    # Question bank
    def insert_bank_question(self, question: dict) -> dict:
        data = self._load()
        row = dict(question)
        row['id'] = self._new_id(data)
        row['created_at'] = datetime.datetime.now().isoformat()
        data['bank_questions'].append(row)
        self._save(data)
        return row

    def get_bank_question(self, question_id: str) -> dict | None:
        for row in self._load()['bank_questions']:
            if row['id'] == str(question_id):
                return row
        return None

    def list_bank_questions(self, levels: list[int] = None,
                            categories: list[str] = None) -> list[dict]:
        rows = [row for row in self._load()['bank_questions']
                if (not levels or row['level'] in levels)
                and (not categories or row.get('category') in categories)]
        # Newest first; ids increase with insertion order
        return sorted(rows, key=lambda row: int(row['id']), reverse=True)

    def get_question_stats(self, user_id: str, question_id: str) -> dict | None:
        for row in self._load()['question_stats']:
            if row['user_id'] == user_id and row['question_id'] == str(question_id):
                return row
        return None

    def list_question_stats(self, user_id: str) -> list[dict]:
        return [row for row in self._load()['question_stats'] if row['user_id'] == user_id]

    def insert_question_stats(self, stats: dict) -> dict:
        data = self._load()
        question_id = str(stats['question_id'])
        for row in data['question_stats']:
            if row['user_id'] == stats['user_id'] and row['question_id'] == question_id:
                raise StorageError(
                    f"Duplicate question history: ({stats['user_id']}, {question_id})"
                )
        row = dict(stats)
        row['id'] = self._new_id(data)
        row['question_id'] = question_id
        data['question_stats'].append(row)
        self._save(data)
        return row

    def update_question_stats(self, stats_id: str, correct_count: int, incorrect_count: int,
                              last_answered_at: datetime.datetime) -> None:
        data = self._load()
        for row in data['question_stats']:
            if row['id'] == str(stats_id):
                row['correct_count'] = correct_count
                row['incorrect_count'] = incorrect_count
                row['last_answered_at'] = last_answered_at.isoformat()
                self._save(data)
                return
        raise StorageError(f"Question history not found: {stats_id}")

    def insert_question_answer(self, answer: dict) -> None:
        data = self._load()
        row = dict(answer)
        row['question_id'] = str(answer['question_id'])
        row['answered_at'] = answer['answered_at'].isoformat()
        data['question_answers'].append(row)
        self._save(data)

    def get_learning_session(self, user_id: str, session_id: str) -> dict | None:
        for row in self._load()['learning_sessions']:
            if row['user_id'] == user_id and row['session_id'] == session_id:
                return row
        return None

    def add_session_answer(self, user_id: str, session_id: str, is_correct: bool,
                           answered_at: datetime.datetime) -> None:
        data = self._load()
        for row in data['learning_sessions']:
            if row['user_id'] == user_id and row['session_id'] == session_id:
                break
        else:
            row = {'user_id': user_id, 'session_id': session_id, 'total_questions': 0,
                   'correct_count': 0, 'started_at': answered_at.isoformat()}
            data['learning_sessions'].append(row)
        row['total_questions'] += 1
        row['correct_count'] += 1 if is_correct else 0
        row['updated_at'] = answered_at.isoformat()
        self._save(data)

    def delete_user_data(self, user_id: str) -> None:
        data = self._load()
        result_ids = {row['id'] for row in data['test_results'] if row['user_id'] == user_id}
        data['test_result_items'] = [row for row in data['test_result_items']
                                     if row['result_id'] not in result_ids]
        for table in ('user_words', 'word_history', 'test_results', 'usage_log',
                      'question_stats', 'question_answers', 'learning_sessions'):
            data[table] = [row for row in data[table] if row['user_id'] != user_id]
        data['subscriptions'].pop(user_id, None)
        self._save(data)

    def load_api_stats(self, provider_name: str) -> dict | None:
        return self._load()['api_stats'].get(provider_name)

    def save_api_stats(self, provider_name: str, stats: dict) -> None:
        data = self._load()
        data['api_stats'][provider_name] = stats
        self._save(data)
