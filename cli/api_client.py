"""REST API client for the TOEIC words server."""

import requests


class WordsAPIClient:
    """Client for communicating with the TOEIC words REST API."""

    def __init__(self, base_url: str = "http://localhost:8000", user_id: str = None):
        self.base_url = base_url.rstrip('/')
        self.user_id = user_id
        self.session = requests.Session()

    def _get(self, endpoint: str, params: dict = None) -> dict:
        """Make a GET request."""
        if params is None:
            params = {}
        params['user_id'] = self.user_id
        response = self.session.get(f"{self.base_url}{endpoint}", params=params)
        response.raise_for_status()
        return response.json()

    def _post(self, endpoint: str, data: dict) -> dict:
        """Make a POST request."""
        data['user_id'] = self.user_id
        response = self.session.post(f"{self.base_url}{endpoint}", json=data)
        response.raise_for_status()
        return response.json()

    def health_check(self) -> dict:
        """Check if the server is running."""
        response = self.session.get(f"{self.base_url}/api/health")
        response.raise_for_status()
        return response.json()

    def define_word(self, word: str) -> list:
        """Look up a word and get its catalog definitions."""
        return self._post("/api/words/define", {'word': word})

    def register_words(self, word_ids: list[str]) -> dict:
        """Add catalog words to the user's list."""
        return self._post("/api/words", {'word_ids': word_ids})

    def get_words(self) -> dict:
        return self._get("/api/words")

    def get_review(self) -> dict:
        """Get the words due for review today."""
        return self._get("/api/review")

    def answer_review(self, user_word_id: str, is_correct: bool) -> dict:
        return self._post("/api/review/answer", {
            'user_word_id': user_word_id,
            'is_correct': is_correct
        })

    def get_review_progress(self) -> dict:
        return self._get("/api/review/progress")

    def generate_quiz(self, count: int = 10) -> dict:
        """Generate a quiz batch."""
        return self._post("/api/quiz/generate", {'count': count})

    def submit_quiz(self, questions: list[dict], selected: list[str]) -> dict:
        """Submit answers (option letters) for grading."""
        return self._post("/api/quiz/submit", {
            'questions': questions,
            'selected': selected
        })

    def get_latest_result(self) -> dict:
        return self._get("/api/results/latest")

    def smart_questions(self, mode: str = 'quick', count: int = 10) -> dict:
        """Pick practice questions from the question bank."""
        return self._post("/api/bank/smart", {'mode': mode, 'count': count})

    def save_question_answers(self, answers: list[dict], session_id: str = None) -> dict:
        """Record practice answers ({question_id, user_answer, is_correct})."""
        return self._post("/api/bank/answers", {
            'answers': answers,
            'session_id': session_id
        })
