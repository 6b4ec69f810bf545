from __future__ import annotations

import secrets
import string
from datetime import datetime

_ALPHABET = string.ascii_uppercase + string.digits
SUFFIX_LENGTH = 6


def generate_ticket_number(prefix: str, now: datetime) -> str:
    """Return ``PREFIX-YYYY-XXXXXX`` with a random upper-case alphanumeric suffix."""

    suffix = "".join(secrets.choice(_ALPHABET) for _ in range(SUFFIX_LENGTH))
    return f"{prefix}-{now.year:04d}-{suffix}"

