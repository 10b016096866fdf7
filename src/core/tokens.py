"""
Random token generation for managed secrets.
"""

import secrets

from .config import DEFAULT_ALPHABET, DEFAULT_SECRET_LENGTH
from .errors import TokenGenerationError


def validate_token_params(length: int, alphabet: str):
    """Raise ValueError if length or alphabet cannot produce a token."""
    if not isinstance(length, int) or isinstance(length, bool) or length < 1:
        raise ValueError(f"Token length must be a positive integer: {length!r}")

    if len(alphabet) < 2:
        raise ValueError("Alphabet must contain at least 2 characters")

    if len(set(alphabet)) != len(alphabet):
        raise ValueError("Alphabet characters must be unique")


def generate_token(length: int = DEFAULT_SECRET_LENGTH, alphabet: str = DEFAULT_ALPHABET) -> str:
    """
    Generate a random token of `length` characters drawn from `alphabet`.

    Each character is selected independently with secrets.choice, which draws
    through randbelow (rejection sampling) so every symbol is equally likely
    regardless of the alphabet size.

    Raises:
        ValueError: invalid length or alphabet
        TokenGenerationError: the operating system entropy source failed
    """
    validate_token_params(length, alphabet)

    try:
        return "".join(secrets.choice(alphabet) for _ in range(length))
    except (OSError, NotImplementedError) as e:
        raise TokenGenerationError(f"Secure random source failed: {e}") from e
