from __future__ import annotations

import base64
import binascii
import json
import logging
import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional, Protocol, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ground.investment_models import (
    UNSET,
    DecryptionFailed,
    Encrypted,
    Movement,
    RealValue,
    Snapshot,
    StoredMovement,
    StoredSnapshot,
)

logger = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 120_000
KEY_LENGTH = 32
IV_LENGTH = 12

# Plaintext field names shared with clients that encrypt on their side.
CLOSING_CAPITAL = "closingCapital"
CLOSING_CAPITAL_USD = "closingCapitalUsd"
AMOUNT = "amount"


class PayloadCipher(Protocol):
    available: bool

    def encrypt(self, record: Mapping[str, Any]) -> Optional[str]:
        ...

    def decrypt(self, payload: str) -> Optional[dict]:
        ...


class NullCipher:
    """No key loaded: nothing can be encrypted and payloads stay unread."""

    available = False

    def encrypt(self, record: Mapping[str, Any]) -> Optional[str]:
        return None

    def decrypt(self, payload: str) -> Optional[dict]:
        return None


class AesGcmCipher:
    """AES-256-GCM over JSON records.

    Payloads are base64(IV || ciphertext || tag), matching what browser
    clients produce with WebCrypto.
    """

    available = True

    def __init__(self, key_b64: str) -> None:
        try:
            key = base64.b64decode(key_b64, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("Encryption key must be base64.") from exc
        if len(key) != KEY_LENGTH:
            raise ValueError("Encryption key must be 32 bytes.")
        self._aead = AESGCM(key)

    def encrypt(self, record: Mapping[str, Any]) -> Optional[str]:
        iv = os.urandom(IV_LENGTH)
        plaintext = json.dumps(dict(record), default=str).encode("utf-8")
        combined = iv + self._aead.encrypt(iv, plaintext, None)
        return base64.b64encode(combined).decode("ascii")

    def decrypt(self, payload: str) -> Optional[dict]:
        try:
            raw = base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError):
            return None
        if len(raw) <= IV_LENGTH:
            return None
        try:
            plaintext = self._aead.decrypt(raw[:IV_LENGTH], raw[IV_LENGTH:], None)
            record = json.loads(plaintext.decode("utf-8"))
        except (InvalidTag, UnicodeDecodeError, json.JSONDecodeError):
            return None
        return record if isinstance(record, dict) else None


def derive_encryption_key(password: str, salt_b64: str) -> str:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=base64.b64decode(salt_b64),
        iterations=PBKDF2_ITERATIONS,
    )
    return base64.b64encode(kdf.derive(password.encode("utf-8"))).decode("ascii")


def generate_salt() -> str:
    return base64.b64encode(os.urandom(16)).decode("ascii")


@dataclass(frozen=True)
class Resolved:
    record: dict
    is_real_zero: bool


@dataclass(frozen=True)
class DecryptionFailure:
    reason: str


Resolution = Union[Resolved, DecryptionFailure]


class DecryptionGate:
    def __init__(self, cipher: Optional[PayloadCipher] = None) -> None:
        self.cipher = cipher or NullCipher()

    @property
    def available(self) -> bool:
        return self.cipher.available

    def resolve(self, payload: str, fields: tuple[str, ...] = (CLOSING_CAPITAL, CLOSING_CAPITAL_USD)) -> Resolution:
        if not self.cipher.available:
            return DecryptionFailure("no_key")
        record = self.cipher.decrypt(payload)
        if record is None:
            return DecryptionFailure("unreadable")
        amounts = [_optional_decimal(record.get(name)) for name in fields]
        present = [amount for amount in amounts if amount is not None]
        is_real_zero = bool(present) and all(amount == 0 for amount in present)
        return Resolved(record=record, is_real_zero=is_real_zero)

    def resolve_snapshot(self, stored: StoredSnapshot) -> Snapshot:
        if not stored.encrypted_payload:
            if stored.closing_capital is None and stored.closing_capital_usd is None:
                value = UNSET
            else:
                value = RealValue(native=stored.closing_capital, usd=stored.closing_capital_usd)
            return Snapshot(
                month=stored.month,
                value=value,
                is_closed=stored.is_closed,
                usd_rate=stored.usd_rate,
            )

        resolution = self.resolve(stored.encrypted_payload)
        if isinstance(resolution, Resolved):
            value = Encrypted(
                native=_optional_decimal(resolution.record.get(CLOSING_CAPITAL)),
                usd=_optional_decimal(resolution.record.get(CLOSING_CAPITAL_USD)),
                confirmed_real=True,
            )
        elif resolution.reason == "no_key":
            # Server-side amounts are placeholders until the payload is read.
            value = Encrypted(
                native=stored.closing_capital,
                usd=stored.closing_capital_usd,
                confirmed_real=False,
            )
        else:
            logger.warning(
                "Snapshot payload unreadable for investment %s %s-%02d",
                stored.investment_id,
                stored.year,
                stored.month,
            )
            value = DecryptionFailed()
        return Snapshot(
            month=stored.month,
            value=value,
            is_closed=stored.is_closed,
            usd_rate=stored.usd_rate,
        )

    def resolve_movement(self, stored: StoredMovement) -> Movement:
        amount: Optional[Decimal] = stored.amount
        decrypt_failed = False
        if stored.encrypted_payload:
            resolution = self.resolve(stored.encrypted_payload, fields=(AMOUNT,))
            if isinstance(resolution, Resolved):
                amount = _optional_decimal(resolution.record.get(AMOUNT))
            else:
                amount = None
                if resolution.reason == "unreadable":
                    logger.warning("Movement %s payload unreadable", stored.id)
            decrypt_failed = amount is None
        return Movement(
            id=stored.id,
            investment_id=stored.investment_id,
            date=stored.date,
            type=stored.type,
            currency=stored.currency,
            amount=amount,
            decrypt_failed=decrypt_failed,
        )

    def encrypt_snapshot(self, native: Optional[Decimal], usd: Optional[Decimal]) -> Optional[str]:
        return self.cipher.encrypt({CLOSING_CAPITAL: native, CLOSING_CAPITAL_USD: usd})

    def encrypt_movement(self, amount: Decimal) -> Optional[str]:
        return self.cipher.encrypt({AMOUNT: amount})

    def reencrypt(self, payload: str, target: "DecryptionGate") -> Optional[str]:
        """Move a payload under the target gate's key; None when this gate cannot read it."""
        if not self.cipher.available or not target.available:
            return None
        record = self.cipher.decrypt(payload)
        if record is None:
            return None
        return target.cipher.encrypt(record)


def _optional_decimal(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value
    try:
        parsed = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return parsed if parsed.is_finite() else None
