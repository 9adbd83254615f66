"""Gemini AI provider implementation."""

import logging
import time
import google.generativeai as genai

from core.interfaces import AIProvider, Storage

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

STAT_KEYS = ('calls', 'total_ms', 'prompt_tokens', 'completion_tokens', 'total_tokens')


class GeminiProvider(AIProvider):
    """Gemini AI provider implementation."""

    def __init__(self, api_key: str, model_name: str = 'gemini-2.5-flash', storage: Storage = None):
        genai.configure(api_key=api_key)
        self.model = genai.GenerativeModel(model_name)
        self.model_name = model_name
        self.storage = storage
        self.stats = {}
        if storage:
            self.stats = storage.load_api_stats(model_name) or {}

    def _execute(self, prompt: str, call_type: str) -> tuple[str, int]:
        """Send a single stateless prompt. Transport errors propagate."""
        start_time = time.time()
        response = self.model.generate_content(prompt)
        end_time = time.time()
        ms = int((end_time - start_time) * 1000)
        self._record_call(call_type, ms, getattr(response, 'usage_metadata', None))
        return (response.text, ms)

    def _record_call(self, call_type: str, ms: int, usage) -> None:
        """Accumulate per-call-type timing and token counts."""
        entry = self.stats.setdefault(call_type, {key: 0 for key in STAT_KEYS})
        entry['calls'] += 1
        entry['total_ms'] += ms
        if usage is not None:
            prompt_tokens = getattr(usage, 'prompt_token_count', 0) or 0
            completion_tokens = getattr(usage, 'candidates_token_count', 0) or 0
            entry['prompt_tokens'] += prompt_tokens
            entry['completion_tokens'] += completion_tokens
            entry['total_tokens'] += getattr(usage, 'total_token_count', 0) or (prompt_tokens + completion_tokens)
        if self.storage:
            try:
                self.storage.save_api_stats(self.model_name, self.stats)
            except Exception as e:
                logger.warning(f"Could not persist API stats: {e}")

    def get_stats(self) -> dict:
        """Return per-call-type stats plus a 'total' entry with averages."""
        result = {key: dict(value) for key, value in self.stats.items()}
        totals = {key: sum(v.get(key, 0) for v in self.stats.values()) for key in STAT_KEYS}
        calls = totals['calls']
        result['total'] = {
            **totals,
            'avg_ms': round(totals['total_ms'] / calls, 1) if calls > 0 else 0,
            'avg_tokens': round(totals['total_tokens'] / calls, 1) if calls > 0 else 0
        }
        return result

    def define_word(self, word: str) -> tuple[str, int]:
        prompt = f"""
            You are an English-learning assistant for Japanese TOEIC students.
            Answer in Japanese.
            Return ONLY the JSON below for the given word: no prose, no markdown.
            If the word has several meanings, include every one of them.

            Format:
            {{
              "word": "example",
              "definitions": [
                {{
                  "word": "the English word",
                  "part_of_speech": "part of speech (in Japanese)",
                  "meaning": "meaning",
                  "example": "an example sentence typical of the TOEIC",
                  "translation": "Japanese translation of the example",
                  "importance": "★★★★★ / ★★★★ / ★★★ / ★★ / ★ (stars, not digits)"
                }}
              ]
            }}

            Word: {word}
        """
        return self._execute(prompt, 'define')

    def generate_quiz(self, count: int, weaknesses: list[str],
                      estimated_score: int) -> tuple[str, int]:
        weakness_text = ', '.join(weaknesses) if weaknesses else 'none'
        prompt = f"""
            You are a professional TOEIC instructor. Follow these rules strictly:
            1) Output JSON only.
            2) Produce exactly {count} questions.
            3) Format:
            {{
              "questions": [
                {{
                  "id": "unique id",
                  "question": "one English sentence with a blank",
                  "translation": "natural Japanese translation of the sentence",
                  "options": ["...", "...", "...", "..."],
                  "answer": "must be identical to one of the options",
                  "explanation": "why the answer is correct, in Japanese",
                  "partOfSpeech": "part of speech of the answer",
                  "example": "another English sentence using the answer",
                  "category": "grammar or vocabulary category",
                  "importance": 1,
                  "synonyms": ["..."]
                }}
              ]
            }}
            Options have no "A." style labels. Importance is 1-5 (5 = most frequent on the TOEIC).
            About half of the questions should target these weak areas: {weakness_text}.
            Estimated TOEIC score of the student: {estimated_score}.
        """
        return self._execute(prompt, 'quiz')
