"""Login identifier parsing: email addresses and national IDs (RUT).

A national ID is written as ``<number>-<check digit>``, optionally with
thousands dots (``12.345.678-5``); the check digit is ``0-9`` or ``K`` and
is compared case-insensitively.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional, Protocol, Union

from payauth.storage.models import User

_NATIONAL_ID = re.compile(r"^\s*([0-9]{1,12})-([0-9kK])\s*$")


@dataclass(frozen=True)
class EmailIdentifier:
    email: str


@dataclass(frozen=True)
class NationalIdIdentifier:
    number: int
    check_digit: str


Identifier = Union[EmailIdentifier, NationalIdIdentifier]


class UserLookup(Protocol):
    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_national_id(self, national_id: int) -> Optional[User]: ...


def is_email(value: str) -> bool:
    return "@" in value


def parse_national_id(value: str) -> Optional[NationalIdIdentifier]:
    match = _NATIONAL_ID.match(value.replace(".", ""))
    if not match:
        return None
    return NationalIdIdentifier(number=int(match.group(1)), check_digit=match.group(2).upper())


def parse_identifier(value: Optional[str]) -> Optional[Identifier]:
    if value is None or not value.strip():
        return None
    trimmed = value.strip()
    if is_email(trimmed):
        return EmailIdentifier(email=trimmed.lower())
    return parse_national_id(trimmed)


def compute_check_digit(number: int) -> str:
    """Modulo-11 check digit for a national ID number."""
    total = 0
    factor = 2
    for digit in reversed(str(number)):
        total += int(digit) * factor
        factor = 2 if factor == 7 else factor + 1
    remainder = 11 - (total % 11)
    if remainder == 11:
        return "0"
    if remainder == 10:
        return "K"
    return str(remainder)


def resolve_user(store: UserLookup, identifier: Optional[str]) -> Optional[User]:
    parsed = parse_identifier(identifier)
    if parsed is None:
        return None
    if isinstance(parsed, EmailIdentifier):
        return store.get_user_by_email(parsed.email)
    user = store.get_user_by_national_id(parsed.number)
    if user and user.check_digit.upper() == parsed.check_digit:
        return user
    return None
