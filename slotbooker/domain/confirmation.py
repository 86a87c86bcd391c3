"""
Short, human-readable booking confirmation codes.
"""

import secrets
from typing import Callable

# No 0/O, 1/I to keep codes readable over the phone
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_LENGTH = 6


def generate_confirmation_code(choice: Callable[[str], str] = secrets.choice) -> str:
    """Generate a random confirmation code, e.g. ``K7MQ2X``."""
    return "".join(choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))


def normalize_confirmation_code(code: str) -> str:
    """Codes are matched case-insensitively."""
    return code.strip().upper()
