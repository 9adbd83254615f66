"""Utility functions for the TOEIC words application."""

import json
import re

from .config import MIN_IMPORTANCE, MAX_IMPORTANCE, DEFAULT_IMPORTANCE, OPTION_LETTERS
from .errors import InvalidUserError

_OPTION_LABEL = re.compile(r'^\(?[A-D][).:：]\s*', re.IGNORECASE)
_LEADING_SYMBOLS = re.compile(r'^[.)\-:：\s]+(?=[a-zA-Z0-9])')
_LETTER_ANSWER = re.compile(r'^([A-Da-d])[).:\s]*$')
_BLANK_PLACEHOLDER = re.compile(r'_{2,}|＿+|（\s*）|（　）|（☐）')


def normalize_word(word: str) -> str:
    """Case-normalize a catalog word."""
    return word.strip().lower()


def clamp(value, low, high):
    """Clamp value into [low, high]."""
    return max(low, min(high, value))


def extract_json(text: str):
    """Extract and parse the JSON object embedded in generator output.

    Strips markdown code fences and any prose around the outermost braces.
    Raises ValueError if no object can be parsed.
    """
    if not isinstance(text, str):
        raise ValueError(f"Expected text, got {type(text).__name__}")
    cleaned = re.sub(r'```(?:json)?', '', text, flags=re.IGNORECASE).strip()
    start = cleaned.find('{')
    end = cleaned.rfind('}')
    if start == -1 or end == -1 or end < start:
        raise ValueError("No JSON object found")
    try:
        return json.loads(cleaned[start:end + 1])
    except json.JSONDecodeError as e:
        raise ValueError(f"Malformed JSON: {e}") from e


def normalize_option_text(raw) -> str:
    """Strip 'A) ' style labels from an option; keep the last non-empty line."""
    if not isinstance(raw, str):
        return ''
    text = _OPTION_LABEL.sub('', raw.strip(), count=1).strip()
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    last = lines[-1] if lines else text
    return _LEADING_SYMBOLS.sub('', last).strip()


def letter_to_index(label) -> int | None:
    """Map an option letter ('a'..'D') to its index, or None."""
    if not isinstance(label, str) or not label.strip():
        return None
    idx = OPTION_LETTERS.find(label.strip()[0].upper())
    return idx if idx >= 0 else None


def resolve_answer(answer_raw, options: list[str]) -> str:
    """Resolve a letter answer ('B', 'b)') to its option text.

    Text answers are returned trimmed; they only match an option if the
    generator reproduced it exactly.
    """
    if not isinstance(answer_raw, str):
        return ''
    trimmed = answer_raw.strip()
    match = _LETTER_ANSWER.match(trimmed)
    if match:
        idx = letter_to_index(match.group(1))
        if idx is not None and idx < len(options):
            return options[idx]
        return ''
    return trimmed


def fill_translation_placeholder(translation: str, fill_text: str) -> str:
    """Replace blank markers ('____', '（　）') in a translation with the answer."""
    if not _BLANK_PLACEHOLDER.search(translation):
        return translation
    replacement = fill_text if fill_text.strip() else '（語句）'
    return _BLANK_PLACEHOLDER.sub(replacement, translation)


def parse_importance(raw) -> int:
    """Parse an importance rank from an int, a digit string or a star string.

    '★★★★' -> 4, '5' -> 5, 7 -> 5. Unparseable values give DEFAULT_IMPORTANCE.
    """
    if isinstance(raw, bool):
        return DEFAULT_IMPORTANCE
    if isinstance(raw, (int, float)):
        return clamp(int(round(raw)), MIN_IMPORTANCE, MAX_IMPORTANCE)
    if isinstance(raw, str):
        stars = raw.count('★')
        if stars:
            return clamp(stars, MIN_IMPORTANCE, MAX_IMPORTANCE)
        digits = re.search(r'\d+', raw)
        if digits:
            return clamp(int(digits.group()), MIN_IMPORTANCE, MAX_IMPORTANCE)
    return DEFAULT_IMPORTANCE


def importance_to_stars(importance: int) -> str:
    """Render an importance rank as stars."""
    return '★' * clamp(int(importance), MIN_IMPORTANCE, MAX_IMPORTANCE)


def require_user_id(user_id) -> str:
    """Reject a missing or blank caller identity."""
    if not isinstance(user_id, str) or not user_id.strip():
        raise InvalidUserError("user_id missing")
    return user_id.strip()
