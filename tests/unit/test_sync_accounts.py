import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from app.services.sync_accounts import SyncAccount, is_due, normalize_customer_id

NOW = datetime(2024, 1, 15, 14, 0, tzinfo=timezone.utc)

ACCOUNT = SyncAccount(
    id=uuid.uuid4(),
    brand_id=uuid.uuid4(),
    brand_name="Acme Coffee",
    customer_id="1234567890",
    conversion_action_id="987654",
    access_token="ya29.token",
    is_active=True,
    batch_size=100,
    sync_interval_minutes=60,
    last_sync_at=None,
    last_sync_status=None,
    last_sync_count=0
)


@pytest.mark.parametrize("raw, expected", [
    ("123-456-7890", "1234567890"),
    ("1234567890", "1234567890"),
    (" 123-456-7890 ", "1234567890"),
])
def test_normalize_customer_id(raw, expected):
    assert normalize_customer_id(raw) == expected


def test_never_synced_account_is_due():
    assert is_due(ACCOUNT, NOW)


def test_account_waits_for_its_interval():
    recent = replace(ACCOUNT, last_sync_at=NOW - timedelta(minutes=59))
    elapsed = replace(ACCOUNT, last_sync_at=NOW - timedelta(minutes=60))

    assert not is_due(recent, NOW)
    assert is_due(elapsed, NOW)


def test_naive_last_sync_is_read_as_utc():
    naive = replace(ACCOUNT, last_sync_at=datetime(2024, 1, 15, 13, 30), sync_interval_minutes=15)

    assert is_due(naive, NOW)
