import hashlib
import re
import secrets
import string
import time
from datetime import datetime, timezone
from typing import Any

from app.core.config import settings
from app.schemas.conversion import ConversionEventCreate

_NON_DIGITS = re.compile(r"\D")
_BASE36_ALPHABET = string.digits + string.ascii_lowercase


def hash_user_data(value: str | None) -> str | None:
    """SHA-256 hex digest of the trimmed, lower-cased value (None for empty input)"""
    if not value:
        return None
    normalized = value.strip().lower()
    if not normalized:
        return None
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def normalize_phone(phone: str, country_code: str | None = None) -> str:
    """
    Normalize a phone number to E.164 before hashing.

    Ten remaining digits are treated as a national number and get the default
    country code; anything else is assumed to already carry one.
    """
    digits = _NON_DIGITS.sub("", phone or "")
    if not digits:
        return ""
    if len(digits) == 10:
        return f"+{country_code or settings.default_phone_country_code}{digits}"
    return f"+{digits}"


def hash_phone(phone: str | None, country_code: str | None = None) -> str | None:
    if not phone:
        return None
    return hash_user_data(normalize_phone(phone, country_code))


def _to_base36(number: int) -> str:
    if number == 0:
        return "0"
    chars = []
    while number:
        number, remainder = divmod(number, 36)
        chars.append(_BASE36_ALPHABET[remainder])
    return "".join(reversed(chars))


def generate_event_id(prefix: str = "evt") -> str:
    """Dedup key for producers that do not supply their own event_id"""
    timestamp = _to_base36(int(time.time() * 1000))
    suffix = "".join(secrets.choice(_BASE36_ALPHABET) for _ in range(6))
    return f"{prefix}_{timestamp}_{suffix}"


def as_utc(value: datetime) -> datetime:
    # Naive datetimes are taken to be UTC already
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def prepare_conversion_event(
        payload: ConversionEventCreate,
        country_code: str | None = None
) -> dict[str, Any]:
    """
    Map a producer payload to persistable columns.

    Raw email, phone and names are replaced by their hashes here, so nothing
    downstream of this function ever sees them.
    """
    return {
        "event_name": payload.event_name.value,
        "event_id": payload.event_id or None,
        "user_email_hash": hash_user_data(payload.user_email),
        "user_phone_hash": hash_phone(payload.user_phone, country_code),
        "user_first_name_hash": hash_user_data(payload.user_first_name),
        "user_last_name_hash": hash_user_data(payload.user_last_name),
        "user_ip": payload.user_ip or None,
        "user_agent": payload.user_agent or None,
        "event_value": payload.event_value,
        "currency": (payload.currency or "USD").upper(),
        "transaction_id": payload.transaction_id or None,
        "custom_params": payload.custom_params or {},
        "source": payload.source or None,
        "campaign_id": payload.campaign_id,
        "brand_id": payload.brand_id,
        "event_time": as_utc(payload.event_time) if payload.event_time else datetime.now(timezone.utc),
    }
