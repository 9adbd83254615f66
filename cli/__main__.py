"""Entry point for the TOEIC words CLI client.

Without a command the interactive console starts; with one (for example
`python -m cli --user alice quiz`) only that command runs.
"""

import argparse
import sys

from cli.api_client import WordsAPIClient
from cli.console import ConsoleUI


def main():
    parser = argparse.ArgumentParser(description='TOEIC words - vocabulary review and quizzes')
    parser.add_argument('--server', default='http://localhost:8000',
                        help='Server URL (default: http://localhost:8000)')
    parser.add_argument('--user', required=True, help='User ID')
    parser.add_argument('command', nargs='*',
                        help='Run a single command: review, quiz, practice [mode], progress or define <word>')
    args = parser.parse_args()

    ui = ConsoleUI(WordsAPIClient(base_url=args.server, user_id=args.user))

    try:
        if args.command:
            ui.handle(' '.join(args.command))
        else:
            ui.run()
    except KeyboardInterrupt:
        print('\nGoodbye!')
        sys.exit(0)


if __name__ == '__main__':
    main()
