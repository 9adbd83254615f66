"""Exceptions raised by the TOEIC words core."""


class WordsError(Exception):
    """Base class for application errors."""


class StorageError(WordsError):
    """A read or write against the word/ledger store failed."""


class InvalidUserError(WordsError):
    """The caller identity is missing or malformed."""


class ValidationError(WordsError):
    """A request payload failed validation."""
