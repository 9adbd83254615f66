"""Tests for the server side: Gemini provider, file storage and API endpoints."""

import datetime
import json
import os
import shutil
import tempfile
import threading
import unittest
from types import SimpleNamespace
from unittest.mock import MagicMock
import sys

# Mock google.generativeai before importing
sys.modules['google'] = MagicMock()
sys.modules['google.generativeai'] = MagicMock()

from fastapi.testclient import TestClient

from core.errors import StorageError
from core.interfaces import AIProvider
from core.models import WordDefinition, UserWordProgress, TestResult, QuestionStats
from server.file_storage import FileStorage


QUESTION = {
    'question': 'The meeting was ____ until Friday.',
    'translation': '会議は金曜日まで____された。',
    'options': ['A) postponed', 'B) postpone', 'C) postponing', 'D) postpones'],
    'answer': 'A',
    'explanation': '受動態なので過去分詞。',
    'partOfSpeech': 'verb',
    'example': 'They postponed the launch.',
    'importance': 5,
    'synonyms': ['delay']
}

DEFINITION = {
    'word': 'invoice',
    'definitions': [
        {'word': 'invoice', 'part_of_speech': '名詞', 'meaning': '請求書',
         'example': 'Please send the invoice.', 'translation': '請求書を送ってください。',
         'importance': '★★★★'}
    ]
}


class StubAIProvider(AIProvider):
    """Provider returning canned JSON."""

    def define_word(self, word: str) -> tuple[str, int]:
        return (json.dumps(DEFINITION), 10)

    def generate_quiz(self, count: int, weaknesses: list[str],
                      estimated_score: int) -> tuple[str, int]:
        return (json.dumps({'questions': [QUESTION] * count}), 10)


class FailingAIProvider(AIProvider):
    """Provider whose transport fails on every call."""

    def __init__(self, error: Exception):
        self.error = error

    def define_word(self, word: str) -> tuple[str, int]:
        raise self.error

    def generate_quiz(self, count: int, weaknesses: list[str],
                      estimated_score: int) -> tuple[str, int]:
        raise self.error


class ThreadRecordingProvider(StubAIProvider):
    """Stub provider noting which thread each call ran on."""

    def __init__(self):
        self.threads = set()

    def define_word(self, word: str) -> tuple[str, int]:
        self.threads.add(threading.get_ident())
        return super().define_word(word)

    def generate_quiz(self, count: int, weaknesses: list[str],
                      estimated_score: int) -> tuple[str, int]:
        self.threads.add(threading.get_ident())
        return super().generate_quiz(count, weaknesses, estimated_score)


class ThreadRecordingStorage(FileStorage):
    """File storage noting which threads read and write it."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.threads = set()

    def _load(self) -> dict:
        self.threads.add(threading.get_ident())
        return super()._load()

    def _save(self, data: dict) -> None:
        self.threads.add(threading.get_ident())
        super()._save(data)


class TestGeminiProvider(unittest.TestCase):
    """Tests for call statistics in the Gemini provider."""

    def make_provider(self, storage=None):
        from server.gemini_provider import GeminiProvider
        provider = GeminiProvider('fake-key', storage=storage)
        provider.model = MagicMock()
        provider.model.generate_content.return_value = SimpleNamespace(
            text='{"questions": []}',
            usage_metadata=SimpleNamespace(
                prompt_token_count=10, candidates_token_count=5, total_token_count=15
            )
        )
        return provider

    def test_generate_quiz_returns_text(self):
        provider = self.make_provider()
        text, ms = provider.generate_quiz(5, ['verb'], 600)
        self.assertEqual(text, '{"questions": []}')
        self.assertGreaterEqual(ms, 0)
        prompt = provider.model.generate_content.call_args[0][0]
        self.assertIn('exactly 5 questions', prompt)
        self.assertIn('verb', prompt)
        self.assertIn('600', prompt)

    def test_stats_accumulate(self):
        provider = self.make_provider()
        provider.generate_quiz(5, [], 450)
        provider.define_word('invoice')
        provider.define_word('budget')
        stats = provider.get_stats()
        self.assertEqual(stats['quiz']['calls'], 1)
        self.assertEqual(stats['define']['calls'], 2)
        self.assertEqual(stats['total']['calls'], 3)
        self.assertEqual(stats['total']['total_tokens'], 45)
        self.assertEqual(stats['total']['avg_tokens'], 15.0)

    def test_stats_persisted(self):
        storage = MagicMock()
        storage.load_api_stats.return_value = {'define': {
            'calls': 4, 'total_ms': 400, 'prompt_tokens': 0,
            'completion_tokens': 0, 'total_tokens': 0
        }}
        provider = self.make_provider(storage)
        provider.define_word('invoice')
        self.assertEqual(provider.get_stats()['define']['calls'], 5)
        storage.save_api_stats.assert_called_once()

    def test_stats_save_failure_does_not_fail_call(self):
        storage = MagicMock()
        storage.load_api_stats.return_value = None
        storage.save_api_stats.side_effect = StorageError("disk full")
        provider = self.make_provider(storage)
        text, _ = provider.define_word('invoice')
        self.assertEqual(text, '{"questions": []}')

    def test_transport_error_propagates(self):
        provider = self.make_provider()
        provider.model.generate_content.side_effect = ConnectionError("timeout")
        with self.assertRaises(ConnectionError):
            provider.generate_quiz(5, [], 450)


class TestFileStorage(unittest.TestCase):
    """Tests for the JSON file storage."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.storage = FileStorage(
            config_file=os.path.join(self.temp_dir, 'config.json'),
            state_dir=self.temp_dir
        )

    def tearDown(self):
        shutil.rmtree(self.temp_dir)

    def add_user_word(self, user_id: str, word: dict) -> dict:
        progress = UserWordProgress(user_id, word['id'], registered_at=datetime.datetime(2026, 10, 1))
        return self.storage.insert_user_word(progress.to_dict())

    def test_missing_config(self):
        with self.assertRaises(FileNotFoundError):
            self.storage.load_config()

    def test_find_word_by_sense(self):
        self.storage.insert_word(WordDefinition('issue', example_sentence='a').to_dict())
        second = self.storage.insert_word(WordDefinition('issue', example_sentence='b').to_dict())
        self.assertEqual(self.storage.find_word('issue', 'b')['id'], second['id'])
        self.assertIsNotNone(self.storage.find_word('issue'))
        self.assertIsNone(self.storage.find_word('issue', 'c'))

    def test_duplicate_user_word_rejected(self):
        word = self.storage.insert_word(WordDefinition('budget').to_dict())
        self.add_user_word('u1', word)
        with self.assertRaises(StorageError):
            self.add_user_word('u1', word)
        self.add_user_word('u2', word)

    def test_update_and_list_user_words(self):
        word = self.storage.insert_word(WordDefinition('budget', importance=4).to_dict())
        row = self.add_user_word('u1', word)
        self.storage.update_user_word(row['id'], 2, 1, ['2026-10-10', '2026-10-11'])
        [listed] = self.storage.list_user_words('u1')
        progress = UserWordProgress.from_dict(listed)
        self.assertEqual(progress.correct_count, 2)
        self.assertEqual(progress.last_review_date, datetime.date(2026, 10, 11))
        self.assertEqual(progress.importance, 4)

    def test_update_missing_user_word(self):
        with self.assertRaises(StorageError):
            self.storage.update_user_word('42', 1, 0, [])

    def test_history_since(self):
        self.storage.insert_word_history('u1', '1', True, datetime.datetime(2026, 10, 1, 9))
        self.storage.insert_word_history('u1', '1', True, datetime.datetime(2026, 10, 18, 9))
        rows = self.storage.list_word_history('u1', since=datetime.datetime(2026, 10, 10))
        self.assertEqual(len(rows), 1)

    def test_latest_result(self):
        first = TestResult('u1', 1, 0.1, 400, [], datetime.datetime(2026, 10, 1))
        second = TestResult('u1', 9, 0.9, 600, ['noun'], datetime.datetime(2026, 10, 2))
        self.storage.insert_test_result(second.to_dict())
        self.storage.insert_test_result(first.to_dict())
        self.assertEqual(self.storage.get_latest_test_result('u1')['predicted_score'], 600)
        self.assertIsNone(self.storage.get_latest_test_result('u2'))

    def test_usage_and_subscription(self):
        self.storage.record_usage('u1')
        self.assertEqual(self.storage.count_usage_since('u1', datetime.datetime(2000, 1, 1)), 1)
        self.assertEqual(self.storage.count_usage_since('u1', datetime.datetime(2999, 1, 1)), 0)
        self.assertFalse(self.storage.is_subscribed('u1'))
        self.storage.set_subscription('u1', True)
        self.assertTrue(self.storage.is_subscribed('u1'))

    def test_delete_user_data(self):
        word = self.storage.insert_word(WordDefinition('budget').to_dict())
        row = self.add_user_word('u1', word)
        self.add_user_word('u2', word)
        self.storage.insert_word_history('u1', row['id'], True, datetime.datetime(2026, 10, 1))
        result = self.storage.insert_test_result(
            TestResult('u1', 1, 1.0, 550, [], datetime.datetime(2026, 10, 1)).to_dict())
        self.storage.insert_test_result_item({'result_id': result['id'], 'question': 'q'})
        self.storage.set_subscription('u1', True)

        self.storage.delete_user_data('u1')

        self.assertEqual(self.storage.list_user_words('u1'), [])
        self.assertEqual(len(self.storage.list_user_words('u2')), 1)
        self.assertEqual(self.storage.list_word_history('u1'), [])
        self.assertIsNone(self.storage.get_latest_test_result('u1'))
        self.assertEqual(self.storage.list_test_result_items(result['id']), [])
        self.assertFalse(self.storage.is_subscribed('u1'))
        self.assertIsNotNone(self.storage.get_word(word['id']))

    def add_question(self, level: int, category: str = 'verb') -> dict:
        return self.storage.insert_bank_question({
            'question': 'q', 'options': ['a', 'b', 'c', 'd'], 'answer': 'a',
            'category': category, 'level': level
        })

    def test_bank_questions_filtered_newest_first(self):
        first = self.add_question(2)
        second = self.add_question(2, 'noun')
        self.add_question(3)
        self.assertEqual([r['id'] for r in self.storage.list_bank_questions(levels=[2])],
                         [second['id'], first['id']])
        self.assertEqual(len(self.storage.list_bank_questions(categories=['verb'])), 2)
        self.assertEqual(self.storage.get_bank_question(first['id'])['level'], 2)
        self.assertIsNone(self.storage.get_bank_question('q_abc_0'))

    def test_question_stats(self):
        question = self.add_question(1)
        stats = QuestionStats('u1', question['id'])
        stats.record(True, datetime.datetime(2026, 10, 1, 9))
        row = self.storage.insert_question_stats(stats.to_dict())
        with self.assertRaises(StorageError):
            self.storage.insert_question_stats(stats.to_dict())

        self.storage.update_question_stats(row['id'], 1, 1, datetime.datetime(2026, 10, 2, 9))
        loaded = QuestionStats.from_dict(self.storage.get_question_stats('u1', question['id']))
        self.assertEqual((loaded.correct_count, loaded.incorrect_count), (1, 1))
        self.assertEqual(loaded.last_answered_at, datetime.datetime(2026, 10, 2, 9))
        self.assertEqual(self.storage.list_question_stats('u2'), [])
        with self.assertRaises(StorageError):
            self.storage.update_question_stats('999', 0, 0, datetime.datetime(2026, 10, 2))

    def test_learning_session_counts(self):
        at = datetime.datetime(2026, 10, 1, 9)
        self.storage.add_session_answer('u1', 's1', True, at)
        self.storage.add_session_answer('u1', 's1', False, at)
        self.storage.add_session_answer('u1', 's2', True, at)
        session = self.storage.get_learning_session('u1', 's1')
        self.assertEqual((session['total_questions'], session['correct_count']), (2, 1))
        self.assertIsNone(self.storage.get_learning_session('u2', 's1'))

    def test_delete_user_data_clears_question_history(self):
        question = self.add_question(1)
        at = datetime.datetime(2026, 10, 1, 9)
        for user_id in ('u1', 'u2'):
            self.storage.insert_question_stats(QuestionStats(user_id, question['id']).to_dict())
            self.storage.insert_question_answer({'user_id': user_id, 'question_id': question['id'],
                                                 'is_correct': True, 'answered_at': at})
            self.storage.add_session_answer(user_id, 's1', True, at)

        self.storage.delete_user_data('u1')

        self.assertEqual(self.storage.list_question_stats('u1'), [])
        self.assertIsNone(self.storage.get_learning_session('u1', 's1'))
        self.assertEqual(len(self.storage.list_question_stats('u2')), 1)
        self.assertIsNotNone(self.storage.get_learning_session('u2', 's1'))
        self.assertIsNotNone(self.storage.get_bank_question(question['id']))


class TestAPI(unittest.TestCase):
    """Endpoint tests against file storage and a stub provider."""

    def setUp(self):
        from server import app as app_module
        self.temp_dir = tempfile.mkdtemp()
        self.storage = FileStorage(
            config_file=os.path.join(self.temp_dir, 'config.json'),
            state_dir=self.temp_dir
        )
        app_module.configure(self.storage, StubAIProvider())
        # No context manager: the startup hook would replace the wiring
        self.client = TestClient(app_module.app)

    def tearDown(self):
        shutil.rmtree(self.temp_dir)

    def test_health(self):
        response = self.client.get('/api/health')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['status'], 'ok')

    def test_missing_user_is_unauthorized(self):
        self.assertEqual(self.client.get('/api/review').status_code, 401)
        response = self.client.post('/api/quiz/generate', json={'count': 3})
        self.assertEqual(response.status_code, 401)

    def test_define_register_review(self):
        definitions = self.client.post('/api/words/define', json={'word': 'invoice'}).json()
        self.assertEqual(definitions[0]['importance'], 4)

        response = self.client.post('/api/words', json={
            'user_id': 'u1', 'word_ids': [definitions[0]['id']]
        })
        self.assertTrue(response.json()['success'])

        review = self.client.get('/api/review', params={'user_id': 'u1'}).json()
        self.assertEqual(review['total'], 1)
        entry = review['words'][0]
        self.assertEqual(entry['word']['word'], 'invoice')

        answered = self.client.post('/api/review/answer', json={
            'user_id': 'u1', 'user_word_id': entry['id'], 'is_correct': True
        }).json()
        self.assertEqual(answered['correct_count'], 1)
        self.assertNotEqual(answered['next_review'], entry['next_review'])

        progress = self.client.get('/api/review/progress', params={'user_id': 'u1'}).json()
        self.assertEqual(progress['today'], 1)

    def test_define_takes_only_the_word(self):
        from server import app as app_module
        self.assertEqual(set(app_module.DefineRequest.model_fields), {'word'})
        # Clients that still send user_id are accepted
        response = self.client.post('/api/words/define', json={'word': 'invoice', 'user_id': 'u1'})
        self.assertEqual(response.status_code, 200)

    def test_register_unknown_word(self):
        response = self.client.post('/api/words', json={'user_id': 'u1', 'word_ids': ['99']})
        self.assertEqual(response.status_code, 400)

    def test_quiz_flow(self):
        batch = self.client.post('/api/quiz/generate', json={'user_id': 'u1', 'count': 2}).json()
        self.assertEqual(batch['status'], 'ok')
        self.assertEqual(batch['questions'][0]['answer'], 'postponed')

        again = self.client.post('/api/quiz/generate', json={'user_id': 'u1'}).json()
        self.assertTrue(again['limit_reached'])

        result = self.client.post('/api/quiz/submit', json={
            'user_id': 'u1', 'questions': batch['questions'], 'selected': ['A', 'B']
        }).json()
        self.assertEqual(result['correct_count'], 1)
        self.assertEqual(result['total'], 2)
        self.assertEqual(result['predicted_score'], 450)
        self.assertEqual(result['weak_categories'], ['verb'])

        latest = self.client.get('/api/results/latest', params={'user_id': 'u1'}).json()
        self.assertEqual(latest['result']['id'], result['id'])
        self.assertEqual(len(latest['result']['items']), 2)

        words = self.client.get('/api/words', params={'user_id': 'u1'}).json()
        self.assertEqual(words['total'], 1)
        self.assertEqual(words['words'][0]['correct_count'], 0)

    def test_submit_invalid_question(self):
        response = self.client.post('/api/quiz/submit', json={
            'user_id': 'u1', 'questions': [{'question': 'x'}], 'selected': ['A']
        })
        self.assertEqual(response.status_code, 400)

    def test_subscription_lifts_limit(self):
        self.client.post('/api/subscription', json={'user_id': 'u1', 'is_active': True})
        self.assertTrue(
            self.client.get('/api/subscription', params={'user_id': 'u1'}).json()['is_active'])
        self.client.post('/api/quiz/generate', json={'user_id': 'u1'})
        batch = self.client.post('/api/quiz/generate', json={'user_id': 'u1'}).json()
        self.assertEqual(batch['status'], 'ok')

    def test_delete_user(self):
        self.client.post('/api/quiz/generate', json={'user_id': 'u1'})
        self.assertTrue(self.client.delete('/api/users/u1').json()['success'])
        batch = self.client.post('/api/quiz/generate', json={'user_id': 'u1'}).json()
        self.assertEqual(batch['status'], 'ok')

    def test_provider_failure_is_bad_gateway_with_cause(self):
        from server import app as app_module
        error = RuntimeError('upstream 503: model overloaded')
        app_module.configure(self.storage, FailingAIProvider(error))

        response = self.client.post('/api/quiz/generate', json={'user_id': 'u1', 'count': 2})
        self.assertEqual(response.status_code, 502)
        self.assertIn('RuntimeError: upstream 503: model overloaded', response.json()['detail'])

        response = self.client.post('/api/words/define', json={'word': 'invoice'})
        self.assertEqual(response.status_code, 502)
        self.assertIn('RuntimeError: upstream 503: model overloaded', response.json()['detail'])

        # A failed call does not use up the free generation
        app_module.configure(self.storage, StubAIProvider())
        batch = self.client.post('/api/quiz/generate', json={'user_id': 'u1'}).json()
        self.assertEqual(batch['status'], 'ok')

    def test_storage_stays_on_one_thread(self):
        from server import app as app_module
        storage = ThreadRecordingStorage(
            config_file=os.path.join(self.temp_dir, 'config.json'),
            state_dir=self.temp_dir
        )
        provider = ThreadRecordingProvider()
        app_module.configure(storage, provider)

        requests = [
            ('/api/words/define', {'word': 'invoice'}),
            ('/api/quiz/generate', {'user_id': 'u1', 'count': 2}),
        ]
        for path, body in requests:
            storage.threads.clear()
            provider.threads.clear()
            self.assertEqual(self.client.post(path, json=body).status_code, 200)
            self.assertEqual(len(storage.threads), 1, path)
            self.assertEqual(len(provider.threads), 1, path)
            self.assertTrue(provider.threads.isdisjoint(storage.threads), path)

    def test_question_bank_endpoints(self):
        batch = self.client.post('/api/quiz/generate', json={
            'user_id': 'u1', 'count': 3, 'estimated_score': 700
        }).json()
        self.assertTrue(all(q['level'] == 3 for q in batch['questions']))
        ids = {q['id'] for q in batch['questions']}

        smart = self.client.post('/api/bank/smart', json={'user_id': 'u2', 'mode': 'quick',
                                                          'count': 2}).json()
        self.assertEqual(smart['total'], 2)
        self.assertTrue({q['id'] for q in smart['questions']} <= ids)

        random_pick = self.client.get('/api/bank/random').json()
        self.assertIn(random_pick['question']['id'], ids)

        drawn = self.client.post('/api/bank/draw', json={'count': 4, 'estimated_score': 700}).json()
        self.assertEqual(drawn['level'], 3)
        self.assertEqual(len(drawn['questions']), 3)
        self.assertEqual(drawn['missing'], 1)

        question_id = sorted(ids)[0]
        saved = self.client.post('/api/bank/answers', json={
            'user_id': 'u2', 'session_id': 's1',
            'answers': [{'question_id': question_id, 'user_answer': 'postpone', 'is_correct': False},
                        {'question_id': question_id, 'user_answer': 'postponed', 'is_correct': True}]
        }).json()
        self.assertTrue(saved['success'])
        self.assertEqual(saved['recorded'][-1]['correct_count'], 1)
        self.assertEqual(saved['recorded'][-1]['incorrect_count'], 1)
        self.assertEqual(saved['session']['total_questions'], 2)

        review = self.client.post('/api/bank/smart', json={'user_id': 'u2', 'mode': 'review'}).json()
        self.assertEqual(review['total'], 0)

    def test_question_bank_rejects_bad_input(self):
        response = self.client.post('/api/bank/smart', json={'user_id': 'u1', 'mode': 'cram'})
        self.assertEqual(response.status_code, 400)
        response = self.client.post('/api/bank/answers', json={
            'user_id': 'u1', 'answers': [{'question_id': '404', 'is_correct': True}]
        })
        self.assertEqual(response.status_code, 400)
        response = self.client.post('/api/bank/answers', json={'user_id': 'u1', 'answers': []})
        self.assertEqual(response.status_code, 400)
        self.assertIsNone(self.client.get('/api/bank/random').json()['question'])

    def test_submitted_bank_questions_feed_weakness_analysis(self):
        self.client.post('/api/subscription', json={'user_id': 'u1', 'is_active': True})
        batch = self.client.post('/api/quiz/generate', json={'user_id': 'u1', 'count': 3}).json()
        self.client.post('/api/quiz/submit', json={
            'user_id': 'u1', 'questions': batch['questions'], 'selected': ['B', 'B', 'A']
        })
        analysis = self.client.get('/api/bank/weaknesses', params={'user_id': 'u1'}).json()
        [verb] = analysis['categories']
        self.assertEqual(verb['category'], 'verb')
        self.assertEqual(verb['total'], 3)
        self.assertAlmostEqual(verb['correct_rate'], 1 / 3)


if __name__ == '__main__':
    unittest.main()
