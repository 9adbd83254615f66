"""Console UI for the TOEIC words application."""

import uuid

import requests

from core.bank import MODES
from core.config import OPTION_LETTERS
from core.utils import importance_to_stars
from cli.api_client import WordsAPIClient


class ConsoleUI:
    """Console user interface for review sessions and quizzes."""

    def __init__(self, client: WordsAPIClient):
        self.client = client

    def print_word(self, entry: dict, show_meaning: bool = False):
        """Print a word card; the meaning is hidden until revealed."""
        word = entry.get('word') or {}
        print('\n' + '=' * 50)
        print(f"{word.get('word', '?')}  [{word.get('part_of_speech', '')}]  "
              f"{importance_to_stars(word.get('importance', 1))}")
        if word.get('example_sentence'):
            print(f"  {word['example_sentence']}")
        if show_meaning:
            print(f"\n  Meaning: {word.get('meaning', '')}")
            if word.get('translation'):
                print(f"  Translation: {word['translation']}")
        print('=' * 50)

    def print_progress(self, progress: dict):
        """Print today's review progress."""
        labels = {
            'phase1': 'Working on the first target',
            'phase2': 'First target reached',
            'finished': 'Both targets reached'
        }
        print('-' * 40)
        print(f"Today: {progress['today']} correct | Previous day: {progress['yesterday']}")
        print(f"Targets: {progress['first_target']} / {progress['second_target']} "
              f"- {labels.get(progress['phase'], progress['phase'])}")
        print('-' * 40)

    def print_question(self, number: int, total: int, question: dict):
        print(f"\nQ{number}/{total}: {question['question']}")
        for letter, option in zip(OPTION_LETTERS, question['options']):
            print(f"  {letter}. {option}")

    def print_result(self, result: dict):
        """Print a graded quiz."""
        print('\n' + '=' * 50)
        print('QUIZ RESULT')
        print('=' * 50)
        for i, item in enumerate(result['items'], 1):
            mark = 'OK ' if item['is_correct'] else 'NG '
            print(f"{mark} Q{i}: {item['correct_answer']}"
                  + ('' if item['is_correct'] else f" (you: {item['user_answer'] or '-'})"))
        print(f"\nCorrect: {result['correct_count']}/{result['total']} "
              f"({result['accuracy'] * 100:.0f}%)")
        print(f"Predicted score: {result['predicted_score']}")
        if result['weak_categories']:
            print(f"Weak areas: {', '.join(result['weak_categories'])}")
        print('=' * 50 + '\n')

    def review_session(self):
        """Walk through today's due words."""
        data = self.client.get_review()
        if data['nothing_due']:
            print('Nothing to review today.')
            return

        print(f"{data['total']} words to review. Press Enter to reveal, then answer y/n. 'q' stops.")
        for entry in data['words']:
            self.print_word(entry)
            if input('reveal> ').strip().lower() == 'q':
                return
            self.print_word(entry, show_meaning=True)
            answer = ''
            while answer not in ('y', 'n', 'q'):
                answer = input('Did you know it? (y/n/q) ').strip().lower()
            if answer == 'q':
                return
            self.client.answer_review(entry['id'], answer == 'y')
        self.print_progress(self.client.get_review_progress())
        print('Review finished!')

    def quiz_session(self):
        """Generate a quiz, collect answers and show the graded result."""
        print('Generating quiz...')
        batch = self.client.generate_quiz()
        if batch['status'] != 'ok':
            print(batch['message'])
            return

        questions = batch['questions']
        selected = []
        for i, question in enumerate(questions, 1):
            self.print_question(i, len(questions), question)
            choice = ''
            while len(choice) != 1 or choice not in OPTION_LETTERS:
                choice = input('==> ').strip().upper()
            selected.append(choice)

        result = self.client.submit_quiz(questions, selected)
        self.print_result(result)

    def practice_session(self, mode: str = 'quick'):
        """Answer stored questions; each answer is checked right away."""
        if mode not in MODES:
            print(f"Modes: {', '.join(MODES)}")
            return
        data = self.client.smart_questions(mode)
        if not data['questions']:
            print('No stored questions to practice in this mode.')
            return

        answers = []
        for i, question in enumerate(data['questions'], 1):
            self.print_question(i, data['total'], question)
            choice = ''
            while len(choice) != 1 or choice not in OPTION_LETTERS[:len(question['options'])]:
                choice = input('==> ').strip().upper()
            user_answer = question['options'][OPTION_LETTERS.index(choice)]
            is_correct = user_answer == question['answer']
            print('Correct!' if is_correct else f"Answer: {question['answer']}")
            print(f"  {question['explanation']}")
            answers.append({'question_id': question['id'], 'user_answer': user_answer,
                            'is_correct': is_correct})

        session = self.client.save_question_answers(answers, uuid.uuid4().hex)['session']
        print(f"\nSession: {session['correct_count']}/{session['total_questions']} correct\n")

    def lookup(self, word: str):
        """Look up a word and offer to save its senses."""
        definitions = self.client.define_word(word)
        if not definitions:
            print('No definitions found.')
            return
        for i, definition in enumerate(definitions, 1):
            print(f"{i}. {definition['word']} [{definition['part_of_speech']}] "
                  f"{definition['meaning']}  {importance_to_stars(definition['importance'])}")
        if input('Save all? (y/n) ').strip().lower() == 'y':
            result = self.client.register_words([d['id'] for d in definitions])
            print(result['message'])

    def run(self):
        """Run the main application loop."""
        # Check server connection
        try:
            health = self.client.health_check()
            print(f"Connected to TOEIC words server ({health['service']})")
        except requests.RequestException:
            print(f"Error: Cannot connect to server at {self.client.base_url}")
            print("Make sure the server is running: python run_server.py")
            return

        print('Commands: "review", "quiz", "practice [mode]", "define <word>", "progress", "exit"\n')
        while True:
            command = input('> ').strip()
            if command == 'exit':
                print('Goodbye!')
                return
            self.handle(command)

    def handle(self, command: str):
        """Run one command. Request errors are reported, not raised."""
        try:
            if command == 'review':
                self.review_session()
            elif command == 'quiz':
                self.quiz_session()
            elif command == 'practice' or command.startswith('practice '):
                self.practice_session(command[len('practice'):].strip() or 'quick')
            elif command == 'progress':
                self.print_progress(self.client.get_review_progress())
            elif command.startswith('define '):
                self.lookup(command[len('define '):].strip())
            elif command:
                print('Unknown command.')
        except requests.RequestException as e:
            print(f"Error: {e}")
