from __future__ import annotations

import secrets

from hub_auth.core.config import settings
from hub_auth.core.errors import ValidationError

MIN_CODE_LENGTH = 4


def generate_code(length: int | None = None) -> str:
    size = int(length if length is not None else settings.OTP_LENGTH)
    if size < MIN_CODE_LENGTH:
        raise ValidationError(f"OTP length must be at least {MIN_CODE_LENGTH}")
    return f"{secrets.randbelow(10**size):0{size}d}"


def is_well_formed_code(code: str, length: int | None = None) -> bool:
    size = int(length if length is not None else settings.OTP_LENGTH)
    return len(code) == size and code.isascii() and code.isdigit()
