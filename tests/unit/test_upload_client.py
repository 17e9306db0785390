import json
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import httpx
import pytest

from app.models.conversion import ConversionEvent
from app.services.sync_accounts import SyncAccount
from app.services.upload_client import (
    FullSuccess,
    GoogleAdsUploadClient,
    PartialFailure,
    TransportFailure,
    build_click_conversion,
    build_conversion_action_name,
    format_conversion_datetime,
    parse_partial_failure,
)

ACTION = "customers/1234567890/conversionActions/987654"
EMAIL_HASH = "a" * 64
PHONE_HASH = "b" * 64


def make_event(**fields) -> ConversionEvent:
    values = {
        "id": uuid.uuid4(),
        "event_name": "purchase",
        "currency": "USD",
        "event_time": datetime(2024, 1, 15, 14, 30, 0, 123456, tzinfo=timezone.utc),
    }
    values.update(fields)
    return ConversionEvent(**values)


def make_account(**fields) -> SyncAccount:
    values = {
        "id": uuid.uuid4(),
        "brand_id": uuid.uuid4(),
        "brand_name": "Acme Coffee",
        "customer_id": "1234567890",
        "conversion_action_id": "987654",
        "access_token": "ya29.token",
        "is_active": True,
        "batch_size": 100,
        "sync_interval_minutes": 60,
        "last_sync_at": None,
        "last_sync_status": None,
        "last_sync_count": 0,
    }
    values.update(fields)
    return SyncAccount(**values)


class RecordingTransport(httpx.AsyncBaseTransport):
    """Answers every request with the handler's response and keeps the requests"""

    def __init__(self, handler):
        self.handler = handler
        self.requests: list[httpx.Request] = []

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)


def test_conversion_action_name():
    assert build_conversion_action_name("1234567890", "987654") == ACTION


@pytest.mark.parametrize("value, expected", [
    (datetime(2024, 1, 15, 14, 30, 0, 999999, tzinfo=timezone.utc), "2024-01-15 14:30:00+00:00"),
    (datetime(2024, 1, 15, 16, 30, 5, tzinfo=timezone(timedelta(hours=2))), "2024-01-15 14:30:05+00:00"),
    (datetime(2024, 12, 31, 23, 59, 59), "2024-12-31 23:59:59+00:00"),
])
def test_format_conversion_datetime(value, expected):
    assert format_conversion_datetime(value) == expected


def test_build_click_conversion_full():
    event = make_event(
        event_value=Decimal("49.90"),
        currency="EUR",
        transaction_id="order-1001",
        user_email_hash=EMAIL_HASH,
        user_phone_hash=PHONE_HASH,
        user_first_name_hash="c" * 64,
        user_last_name_hash="d" * 64
    )

    assert build_click_conversion(event, ACTION) == {
        "conversionAction": ACTION,
        "conversionDateTime": "2024-01-15 14:30:00+00:00",
        "conversionValue": 49.9,
        "currencyCode": "EUR",
        "orderId": "order-1001",
        "userIdentifiers": [
            {"hashedEmail": EMAIL_HASH},
            {"hashedPhoneNumber": PHONE_HASH},
            {"addressInfo": {"hashedFirstName": "c" * 64, "hashedLastName": "d" * 64}},
        ],
    }


def test_build_click_conversion_omits_absent_fields():
    upload = build_click_conversion(make_event(), ACTION)

    assert upload == {
        "conversionAction": ACTION,
        "conversionDateTime": "2024-01-15 14:30:00+00:00",
    }


def test_build_click_conversion_zero_value_is_sent():
    upload = build_click_conversion(make_event(event_value=Decimal("0")), ACTION)

    assert upload["conversionValue"] == 0.0
    assert upload["currencyCode"] == "USD"


def test_build_click_conversion_address_info_with_last_name_only():
    upload = build_click_conversion(make_event(user_last_name_hash="d" * 64), ACTION)

    assert upload["userIdentifiers"] == [{"addressInfo": {"hashedLastName": "d" * 64}}]


def test_parse_partial_failure_without_field_paths():
    payload = {"partialFailureError": {"code": 3, "details": [{"message": "bad click"}, {"message": "too old"}]}}

    outcome = parse_partial_failure(payload, 5)

    assert outcome == PartialFailure(messages=("bad click", "too old"), detail_count=2, failed_indexes=None)
    assert outcome.failure_count == 2


def test_parse_partial_failure_with_conversion_indexes():
    payload = {
        "partialFailureError": {
            "code": 3,
            "message": "2 errors",
            "details": [{
                "@type": "type.googleapis.com/google.ads.googleads.v17.errors.GoogleAdsFailure",
                "errors": [
                    {
                        "message": "The click is too old",
                        "location": {"fieldPathElements": [{"fieldName": "conversions", "index": 0}]}
                    },
                    {
                        "message": "Invalid conversion action",
                        "location": {"fieldPathElements": [
                            {"fieldName": "conversions", "index": "2"},
                            {"fieldName": "conversion_action"}
                        ]}
                    },
                ],
            }],
        }
    }

    outcome = parse_partial_failure(payload, 3)

    assert outcome.failed_indexes == frozenset({0, 2})
    assert outcome.failure_count == 2
    assert outcome.messages == ("The click is too old", "Invalid conversion action")


def test_parse_partial_failure_counts_details_not_messages():
    payload = {"partialFailureError": {"details": [{"errors": [
        {"message": "too old"},
        {"message": "bad gclid"},
        {"message": "duplicate order"},
    ]}]}}

    outcome = parse_partial_failure(payload, 5)

    assert outcome.failed_indexes is None
    assert len(outcome.messages) == 3
    assert outcome.failure_count == 1


def test_parse_partial_failure_out_of_range_index_is_uncorrelated():
    payload = {"partialFailureError": {"details": [{"errors": [
        {"message": "x", "location": {"fieldPathElements": [{"fieldName": "conversions", "index": 7}]}}
    ]}]}}

    assert parse_partial_failure(payload, 3).failed_indexes is None


def test_parse_clean_response():
    assert parse_partial_failure({"results": [{}]}, 1) is None
    assert parse_partial_failure({}, 1) is None


@pytest.mark.asyncio
async def test_upload_sends_batched_request(test_settings):
    transport = RecordingTransport(lambda request: httpx.Response(200, json={"results": [{}, {}]}))
    client = GoogleAdsUploadClient(test_settings, transport=transport)
    events = [make_event(user_email_hash=EMAIL_HASH), make_event(transaction_id="order-2")]

    result = await client.upload(make_account(), events)

    assert result.success is True
    assert (result.total_events, result.success_count, result.failure_count) == (2, 2, 0)
    assert result.errors == []
    assert isinstance(result.outcome, FullSuccess)

    assert len(transport.requests) == 1
    request = transport.requests[0]
    assert request.method == "POST"
    assert str(request.url) == (
        "https://googleads.googleapis.com/v17/customers/1234567890:uploadClickConversions"
    )
    assert request.headers["Authorization"] == "Bearer ya29.token"
    assert request.headers["developer-token"] == "dev-token"
    assert request.headers["login-customer-id"] == "1234567890"

    body = json.loads(request.content)
    assert body["partialFailure"] is True
    assert [c["conversionAction"] for c in body["conversions"]] == [ACTION, ACTION]
    assert body["conversions"][1]["orderId"] == "order-2"


@pytest.mark.asyncio
async def test_upload_without_access_token_makes_no_request(test_settings):
    transport = RecordingTransport(lambda request: httpx.Response(200, json={}))
    client = GoogleAdsUploadClient(test_settings, transport=transport)

    result = await client.upload(make_account(access_token=None), [make_event(), make_event()])

    assert transport.requests == []
    assert result.success is False
    assert result.errors == ["No access token configured"]
    assert result.failure_count == 2
    assert result.success_count == 0


@pytest.mark.asyncio
async def test_upload_empty_batch_is_success(test_settings):
    transport = RecordingTransport(lambda request: httpx.Response(500))
    client = GoogleAdsUploadClient(test_settings, transport=transport)

    result = await client.upload(make_account(), [])

    assert transport.requests == []
    assert result.success is True
    assert result.total_events == 0


@pytest.mark.asyncio
async def test_upload_http_error_fails_whole_batch(test_settings):
    transport = RecordingTransport(lambda request: httpx.Response(401, text="UNAUTHENTICATED"))
    client = GoogleAdsUploadClient(test_settings, transport=transport)

    result = await client.upload(make_account(), [make_event(), make_event(), make_event()])

    assert result.success is False
    assert result.success_count == 0
    assert result.failure_count == 3
    assert result.errors == ["API error: 401 - UNAUTHENTICATED"]
    assert isinstance(result.outcome, TransportFailure)


@pytest.mark.asyncio
async def test_upload_network_error_fails_whole_batch(test_settings):
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = GoogleAdsUploadClient(test_settings, transport=RecordingTransport(refuse))

    result = await client.upload(make_account(), [make_event(), make_event()])

    assert result.success is False
    assert result.failure_count == 2
    assert result.errors == ["Network error: connection refused"]


@pytest.mark.asyncio
async def test_upload_partial_failure_counts(test_settings):
    payload = {"partialFailureError": {"details": [{"message": "Conversion already exists"}]}}
    client = GoogleAdsUploadClient(
        test_settings,
        transport=RecordingTransport(lambda request: httpx.Response(200, json=payload))
    )

    result = await client.upload(make_account(), [make_event(), make_event(), make_event()])

    assert result.success is True
    assert result.success_count == 2
    assert result.failure_count == 1
    assert result.errors == ["Conversion already exists"]
    assert result.failed_indexes is None


@pytest.mark.asyncio
async def test_upload_partial_failure_rejecting_everything(test_settings):
    payload = {"partialFailureError": {"details": [{"message": "bad"}, {"message": "worse"}]}}
    client = GoogleAdsUploadClient(
        test_settings,
        transport=RecordingTransport(lambda request: httpx.Response(200, json=payload))
    )

    result = await client.upload(make_account(), [make_event(), make_event()])

    assert result.success is False
    assert (result.success_count, result.failure_count) == (0, 2)
