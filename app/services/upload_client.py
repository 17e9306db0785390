"""
Google Ads click-conversion upload adapter.

Translates stored conversion events into the uploadClickConversions wire
format, performs one batched request per call, and folds the response into
an UploadResult.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Sequence, Union

import httpx
import structlog

from app.core.config import Settings, settings as default_settings
from app.models.conversion import ConversionEvent
from app.services.hashing import as_utc
from app.services.sync_accounts import SyncAccount

logger = structlog.get_logger()

MISSING_ACCESS_TOKEN = "No access token configured"
MISSING_CUSTOMER_ID = "No customer id configured"
MISSING_CONVERSION_ACTION = "No conversion action id configured"


# Upload outcomes

@dataclass(frozen=True)
class ConfigurationFailure:
    """Account cannot be uploaded for; no request was made"""
    message: str


@dataclass(frozen=True)
class TransportFailure:
    """HTTP or network error; nothing in the batch was accepted"""
    message: str


@dataclass(frozen=True)
class PartialFailure:
    """
    200 response carrying a partialFailureError.

    failed_indexes holds positions in the uploaded batch when every reported
    error names its conversions[index]; otherwise it is None and only the
    number of errors is known.
    """
    messages: tuple[str, ...]
    detail_count: int
    failed_indexes: frozenset[int] | None = None

    @property
    def failure_count(self) -> int:
        if self.failed_indexes is not None:
            return len(self.failed_indexes)
        return self.detail_count


@dataclass(frozen=True)
class FullSuccess:
    pass


UploadOutcome = Union[ConfigurationFailure, TransportFailure, PartialFailure, FullSuccess]


@dataclass
class UploadResult:
    success: bool
    total_events: int
    success_count: int
    failure_count: int
    errors: list[str] = field(default_factory=list)
    failed_indexes: frozenset[int] | None = None
    outcome: UploadOutcome | None = None

    @classmethod
    def from_outcome(cls, outcome: UploadOutcome, total: int) -> "UploadResult":
        if isinstance(outcome, (ConfigurationFailure, TransportFailure)):
            success_count, failure_count, errors = 0, total, [outcome.message]
            failed_indexes = None
        elif isinstance(outcome, PartialFailure):
            failure_count = min(total, outcome.failure_count)
            success_count = total - failure_count
            errors = list(outcome.messages)
            failed_indexes = outcome.failed_indexes
        else:
            success_count, failure_count, errors = total, 0, []
            failed_indexes = None

        # An empty batch is trivially successful
        success = success_count > 0 or (total == 0 and isinstance(outcome, FullSuccess))
        return cls(
            success=success,
            total_events=total,
            success_count=success_count,
            failure_count=failure_count,
            errors=errors,
            failed_indexes=failed_indexes,
            outcome=outcome
        )


# Wire format

def build_conversion_action_name(customer_id: str, conversion_action_id: str) -> str:
    return f"customers/{customer_id}/conversionActions/{conversion_action_id}"


def format_conversion_datetime(value: datetime) -> str:
    """Google Ads format: 2024-01-15 14:30:00+00:00"""
    return as_utc(value).strftime("%Y-%m-%d %H:%M:%S") + "+00:00"


def build_click_conversion(event: ConversionEvent, conversion_action_name: str) -> dict[str, Any]:
    upload: dict[str, Any] = {
        "conversionAction": conversion_action_name,
        "conversionDateTime": format_conversion_datetime(event.event_time),
    }

    if event.event_value is not None:
        upload["conversionValue"] = float(event.event_value)
        upload["currencyCode"] = event.currency

    if event.transaction_id:
        upload["orderId"] = event.transaction_id

    # Enhanced conversions
    user_identifiers: list[dict[str, Any]] = []
    if event.user_email_hash:
        user_identifiers.append({"hashedEmail": event.user_email_hash})
    if event.user_phone_hash:
        user_identifiers.append({"hashedPhoneNumber": event.user_phone_hash})
    if event.user_first_name_hash or event.user_last_name_hash:
        address_info = {}
        if event.user_first_name_hash:
            address_info["hashedFirstName"] = event.user_first_name_hash
        if event.user_last_name_hash:
            address_info["hashedLastName"] = event.user_last_name_hash
        user_identifiers.append({"addressInfo": address_info})

    if user_identifiers:
        upload["userIdentifiers"] = user_identifiers

    return upload


def _conversion_index(error: dict[str, Any], total: int) -> int | None:
    location = error.get("location") or {}
    for element in location.get("fieldPathElements") or []:
        if element.get("fieldName") != "conversions" or "index" not in element:
            continue
        try:
            index = int(element["index"])
        except (TypeError, ValueError):
            return None
        return index if 0 <= index < total else None
    return None


def parse_partial_failure(payload: dict[str, Any], total: int) -> PartialFailure | None:
    """
    Read partialFailureError from an upload response.

    Each detail is either a GoogleAdsFailure with nested `errors` (which
    carry field paths) or a bare status detail with just a message.

    `messages` has one entry per nested error, while `detail_count` counts
    details. Without correlated indexes the failure count is `detail_count`,
    so one detail holding three errors counts as one failed conversion next
    to three messages; do not read len(messages) as the failure count.
    """
    if not isinstance(payload, dict):
        return None
    error = payload.get("partialFailureError")
    if not error:
        return None

    details = error.get("details") or []
    messages: list[str] = []
    indexes: set[int] = set()
    correlated = bool(details)

    for detail in details:
        nested = detail.get("errors")
        if not nested:
            messages.append(detail.get("message") or error.get("message") or "Unknown error")
            correlated = False
            continue
        for item in nested:
            messages.append(item.get("message") or "Unknown error")
            index = _conversion_index(item, total)
            if index is None:
                correlated = False
            else:
                indexes.add(index)

    if not details and error.get("message"):
        messages.append(error["message"])

    return PartialFailure(
        messages=tuple(messages),
        detail_count=len(details),
        failed_indexes=frozenset(indexes) if correlated else None
    )


def check_account(account: SyncAccount) -> str | None:
    if not account.access_token:
        return MISSING_ACCESS_TOKEN
    if not account.customer_id:
        return MISSING_CUSTOMER_ID
    if not account.conversion_action_id:
        return MISSING_CONVERSION_ACTION
    return None


class GoogleAdsUploadClient:
    """Batch uploader for one account's conversion events"""

    def __init__(
            self,
            settings: Settings = default_settings,
            transport: httpx.AsyncBaseTransport | None = None
    ):
        self.api_base = settings.google_ads_api_base.rstrip("/")
        self.api_version = settings.google_ads_api_version
        self.developer_token = settings.google_ads_developer_token
        self.timeout = settings.google_ads_timeout_seconds
        self._transport = transport

    def upload_url(self, customer_id: str) -> str:
        return f"{self.api_base}/{self.api_version}/customers/{customer_id}:uploadClickConversions"

    async def upload(self, account: SyncAccount, events: Sequence[ConversionEvent]) -> UploadResult:
        total = len(events)
        if total == 0:
            return UploadResult.from_outcome(FullSuccess(), 0)

        problem = check_account(account)
        if problem:
            logger.warning("conversion_upload_misconfigured", account_id=str(account.id), error=problem)
            outcome: UploadOutcome = ConfigurationFailure(problem)
        else:
            outcome = await self._send(account, events)

        result = UploadResult.from_outcome(outcome, total)
        logger.info(
            "conversion_upload_completed",
            account_id=str(account.id),
            outcome=type(outcome).__name__,
            total=total,
            success_count=result.success_count,
            failure_count=result.failure_count
        )
        return result

    async def _send(self, account: SyncAccount, events: Sequence[ConversionEvent]) -> UploadOutcome:
        action_name = build_conversion_action_name(account.customer_id, account.conversion_action_id)
        body = {
            "conversions": [build_click_conversion(event, action_name) for event in events],
            "partialFailure": True,
        }
        headers = {
            "Authorization": f"Bearer {account.access_token}",
            "Content-Type": "application/json",
            "developer-token": self.developer_token,
            "login-customer-id": account.customer_id,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.upload_url(account.customer_id), json=body, headers=headers)
        except httpx.HTTPError as e:
            logger.error("conversion_upload_network_error", account_id=str(account.id), error=str(e))
            return TransportFailure(f"Network error: {str(e) or type(e).__name__}")

        if not response.is_success:
            logger.error(
                "conversion_upload_api_error",
                account_id=str(account.id),
                status_code=response.status_code
            )
            return TransportFailure(f"API error: {response.status_code} - {response.text}")

        try:
            data = response.json()
        except ValueError:
            return TransportFailure("API error: response body is not valid JSON")

        return parse_partial_failure(data, len(events)) or FullSuccess()


def get_upload_client() -> GoogleAdsUploadClient:
    """Dependency for the outbound upload client"""
    return GoogleAdsUploadClient()
