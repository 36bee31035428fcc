"""
Temporary password generation for migrated Entra accounts.
"""

import secrets
import string
from typing import List

from bridge.services.errors import InvalidArgumentError

LOWERCASE = string.ascii_lowercase
UPPERCASE = string.ascii_uppercase
DIGITS = string.digits
SYMBOLS = "!@#$%^&*"

ALPHABET = LOWERCASE + UPPERCASE + DIGITS + SYMBOLS

# Entra password policy
MIN_ENTRA_LENGTH = 8
MAX_ENTRA_LENGTH = 256
MIN_CHARACTER_CLASSES = 3

_system_random = secrets.SystemRandom()


def generate_secure_password(length: int = 16) -> str:
    """
    Generate a random password containing every character class.

    One character is drawn from each of lowercase, uppercase, digits and
    symbols; the rest come from the union of all four. The result is
    shuffled so the guaranteed characters do not sit at fixed positions.

    Args:
        length: Password length, at least 4

    Returns:
        The generated password

    Raises:
        InvalidArgumentError: If length is below 4
    """
    if length < 4:
        raise InvalidArgumentError(
            f"Password length must be at least 4, got {length}",
            {"length": length},
        )

    chars = [
        secrets.choice(LOWERCASE),
        secrets.choice(UPPERCASE),
        secrets.choice(DIGITS),
        secrets.choice(SYMBOLS),
    ]
    chars.extend(secrets.choice(ALPHABET) for _ in range(length - 4))
    _system_random.shuffle(chars)
    return "".join(chars)


def validate_password_strength(password: str) -> List[str]:
    """
    Check a password against the Entra complexity policy.

    Args:
        password: Candidate password

    Returns:
        List of human-readable problems, empty when the password is acceptable
    """
    errors: List[str] = []

    if len(password) < MIN_ENTRA_LENGTH:
        errors.append(f"Password must be at least {MIN_ENTRA_LENGTH} characters")
    if len(password) > MAX_ENTRA_LENGTH:
        errors.append(f"Password must be at most {MAX_ENTRA_LENGTH} characters")

    classes = sum(
        [
            any(c in LOWERCASE for c in password),
            any(c in UPPERCASE for c in password),
            any(c in DIGITS for c in password),
            any(not c.isalnum() for c in password),
        ]
    )
    if classes < MIN_CHARACTER_CLASSES:
        errors.append(
            "Password must contain at least 3 of: lowercase, uppercase, digits, symbols"
        )

    return errors
