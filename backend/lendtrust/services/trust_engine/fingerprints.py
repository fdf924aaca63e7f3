"""Identifier normalization and one-way fingerprinting.

Raw emails, phone numbers and national IDs never reach the identity tables;
only keyed HMAC-SHA256 digests of their normalized form do.
"""

from __future__ import annotations

import hashlib
import hmac
import re
from dataclasses import dataclass

from lendtrust.config import settings
from lendtrust.models.identity import FingerprintKind

_NON_DIGITS = re.compile(r"\D+")
_ID_SEPARATORS = re.compile(r"[\s\-./]+")


def normalize_email(email: str | None) -> str | None:
    if not email:
        return None
    value = email.strip().lower()
    return value or None


def normalize_phone(phone: str | None) -> str | None:
    """Digits only; an international ``00`` prefix is treated like ``+``."""
    if not phone:
        return None
    digits = _NON_DIGITS.sub("", phone)
    if digits.startswith("00"):
        digits = digits[2:]
    return digits or None


def normalize_national_id(national_id: str | None) -> str | None:
    if not national_id:
        return None
    value = _ID_SEPARATORS.sub("", national_id).upper()
    return value or None


def _digest(kind: FingerprintKind, normalized: str) -> str:
    key = settings.identity_fingerprint_key.encode("utf-8")
    # Kind is mixed in so equal strings of different kinds never collide
    message = f"{kind.value}:{normalized}".encode("utf-8")
    return hmac.new(key, message, hashlib.sha256).hexdigest()


def email_fingerprint(email: str | None) -> str | None:
    normalized = normalize_email(email)
    return _digest(FingerprintKind.EMAIL, normalized) if normalized else None


def phone_fingerprint(phone: str | None) -> str | None:
    normalized = normalize_phone(phone)
    return _digest(FingerprintKind.PHONE, normalized) if normalized else None


def national_id_fingerprint(national_id: str | None) -> str | None:
    normalized = normalize_national_id(national_id)
    return _digest(FingerprintKind.NATIONAL_ID, normalized) if normalized else None


@dataclass(frozen=True)
class FingerprintSet:
    email: str | None = None
    phone: str | None = None
    national_id: str | None = None

    @classmethod
    def from_raw(
        cls,
        email: str | None = None,
        phone: str | None = None,
        national_id: str | None = None,
    ) -> "FingerprintSet":
        return cls(
            email=email_fingerprint(email),
            phone=phone_fingerprint(phone),
            national_id=national_id_fingerprint(national_id),
        )

    @classmethod
    def for_account(cls, account) -> "FingerprintSet":
        return cls.from_raw(account.email, account.phone, account.national_id)

    def items(self) -> list[tuple[FingerprintKind, str]]:
        pairs = [
            (FingerprintKind.EMAIL, self.email),
            (FingerprintKind.PHONE, self.phone),
            (FingerprintKind.NATIONAL_ID, self.national_id),
        ]
        return [(kind, digest) for kind, digest in pairs if digest]

    def is_empty(self) -> bool:
        return not self.items()
