"""Pairing code generation."""
from __future__ import annotations

import secrets

# Excludes visually ambiguous characters (0/O, 1/I/L, V) to reduce input mistakes.
CODE_ALPHABET = "ABCDEFGHJKMNPQRSTUWXYZ23456789"
CODE_LENGTH = 6


def generate_code(length: int = CODE_LENGTH) -> str:
    """Return a random pairing code drawn from the unambiguous alphabet."""

    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def normalize_code(raw: str | None) -> str:
    return (raw or "").strip().upper()


def is_valid_code(code: str, length: int = CODE_LENGTH) -> bool:
    """Check a normalized code against the alphabet and length."""

    return len(code) == length and all(char in CODE_ALPHABET for char in code)
