from __future__ import annotations

import re
import unicodedata

from hub_auth.core.config import settings
from hub_auth.core.errors import ValidationError

_APP_ID_RE = re.compile(r"^[A-Za-z0-9_.-]{1,64}$")


def _digits_only(raw: str | None) -> str:
    out = []
    for ch in str(raw or ""):
        if ch.isdigit():
            # Arabic-Indic and other Unicode digits map to their ASCII value.
            out.append(str(unicodedata.digit(ch)))
    return "".join(out)


def normalize_mobile(raw: str | None) -> str:
    """Return the canonical ``<country code><national number>`` form.

    Accepted shapes for the default KSA settings: ``5XXXXXXXX``,
    ``05XXXXXXXX``, ``9665XXXXXXXX``, ``+9665XXXXXXXX``, ``009665XXXXXXXX``.
    """
    digits = _digits_only(raw)
    if not digits:
        raise ValidationError("Mobile is required")

    country = str(settings.PHONE_COUNTRY_CODE or "").strip()
    national_len = int(settings.PHONE_NATIONAL_LENGTH)
    prefix = str(settings.PHONE_MOBILE_PREFIX or "")

    if digits.startswith("00"):
        digits = digits[2:]

    if len(digits) == national_len and digits.startswith(prefix):
        return f"{country}{digits}"
    if len(digits) == national_len + 1 and digits.startswith("0" + prefix):
        return f"{country}{digits[1:]}"
    if len(digits) == len(country) + national_len and digits.startswith(country + prefix):
        return digits

    raise ValidationError(f"Invalid mobile number. Expected {prefix}{'X' * (national_len - len(prefix))}")


def mask_identity(identity: str | None) -> str:
    value = str(identity or "")
    if len(value) <= 8:
        return "*" * len(value)
    return f"{value[:4]}{'*' * (len(value) - 8)}{value[-4:]}"


def normalize_app_id(raw: str | None) -> str:
    app_id = str(raw or "").strip() or settings.HUB_APP_ID
    if not _APP_ID_RE.fullmatch(app_id):
        raise ValidationError("Invalid appId")
    allowed = settings.allowed_app_ids
    if allowed and app_id not in allowed:
        raise ValidationError(f"Unknown appId: {app_id}")
    return app_id
