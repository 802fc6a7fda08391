"""
Input validation for signing requests.

Covers signer name and email, the generated request title and the optional
Norwegian national identity number (fødselsnummer) carried in extra claims.
"""

import re
from typing import Any, Dict, List, Mapping, Optional

from utilitysign.services.order_store import Signer

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MIN_NAME_LENGTH = 2
TITLE_TEMPLATE = "Signing Request for {name}"

NATIONAL_ID_CLAIM = "national_id"
NATIONAL_ID_SEPARATORS = re.compile(r"[\s\-.]")
FIRST_CONTROL_WEIGHTS = (3, 7, 6, 1, 8, 9, 4, 5, 2)
SECOND_CONTROL_WEIGHTS = (5, 4, 3, 2, 7, 6, 5, 4, 3, 2)


class SignerValidationError(ValueError):
    """Signer input rejected; ``errors`` maps field name to messages."""

    def __init__(self, errors: Dict[str, List[str]]):
        super().__init__("; ".join(message for messages in errors.values() for message in messages))
        self.errors = errors


def validate_signer(name: Optional[str], email: Optional[str]) -> Signer:
    trimmed_name = (name or "").strip()
    trimmed_email = (email or "").strip()
    errors: Dict[str, List[str]] = {}

    if len(trimmed_name) < MIN_NAME_LENGTH:
        errors.setdefault("name", []).append("Signer name is required and must be at least 2 characters")
    if not trimmed_email:
        errors.setdefault("email", []).append("Signer email is required")
    elif not EMAIL_PATTERN.match(trimmed_email):
        errors.setdefault("email", []).append("Please enter a valid email address")

    if errors:
        raise SignerValidationError(errors)
    return Signer(email=trimmed_email, name=trimmed_name)


def build_title(name: str, max_length: int = 200) -> str:
    title = TITLE_TEMPLATE.format(name=name)
    if len(title) > max_length:
        title = title[: max_length - 3] + "..."
    return title


def _control_digit(digits: List[int], weights) -> Optional[int]:
    remainder = sum(digit * weight for digit, weight in zip(digits, weights)) % 11
    control = 11 - remainder
    if control == 11:
        return 0
    if control == 10:
        return None
    return control


def clean_national_id(value: str) -> str:
    return NATIONAL_ID_SEPARATORS.sub("", value or "")


def is_valid_national_id(value: str) -> bool:
    cleaned = clean_national_id(value)
    if len(cleaned) != 11 or not cleaned.isdigit():
        return False

    day, month = int(cleaned[0:2]), int(cleaned[2:4])
    if not 1 <= day <= 31 or not 1 <= month <= 12:
        return False

    digits = [int(char) for char in cleaned]
    first = _control_digit(digits[:9], FIRST_CONTROL_WEIGHTS)
    if first is None or first != digits[9]:
        return False
    second = _control_digit(digits[:10], SECOND_CONTROL_WEIGHTS)
    return second is not None and second == digits[10]


def format_national_id(value: str) -> str:
    """Render as ``DDMMYY III CC``; invalid input is returned unchanged."""
    cleaned = clean_national_id(value)
    if not is_valid_national_id(cleaned):
        return value
    return f"{cleaned[:6]} {cleaned[6:9]} {cleaned[9:]}"


def normalize_extra_claims(claims: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    normalized: Dict[str, Any] = {}
    for key, value in (claims or {}).items():
        if isinstance(value, str):
            value = value.strip()
            if not value:
                continue
        if value is None:
            continue
        normalized[str(key)] = value

    if NATIONAL_ID_CLAIM in normalized:
        national_id = clean_national_id(str(normalized[NATIONAL_ID_CLAIM]))
        if not is_valid_national_id(national_id):
            raise SignerValidationError({NATIONAL_ID_CLAIM: ["Invalid Norwegian national identity number"]})
        normalized[NATIONAL_ID_CLAIM] = national_id
    return normalized
