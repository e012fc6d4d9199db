"""Identifier and access-code helpers."""

import uuid

ACCESS_CODE_LENGTH = 8


def new_exercise_id() -> str:
    """Return a fresh exercise identifier."""
    return uuid.uuid4().hex


def new_participant_id() -> str:
    """Return a durable participant token, stable across reconnects."""
    return str(uuid.uuid4())


def generate_access_code() -> str:
    """Return an upper-case access code built from the first uuid4 segment.

    Codes are eight hex characters, short enough to read out loud in a room.
    Uniqueness is checked by the caller against the store.
    """
    return str(uuid.uuid4()).split("-")[0].upper()


def normalize_access_code(code: str) -> str:
    """Normalise a human-typed code for lookup."""
    return code.strip().upper()
