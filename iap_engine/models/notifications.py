"""
Webhook notification models - Tagged variant of every inbound webhook shape.

Payloads are classified by probing their structure, never by trusting a
discriminator field supplied by the sender.
"""

from dataclasses import dataclass
from enum import Enum

from iap_engine.models.domain import Vendor


@dataclass(frozen=True)
class AppleNotificationEnvelope:
    """App Store Server Notification V2 body: {"signedPayload": "<JWS>"}."""

    signed_payload: str


@dataclass(frozen=True)
class GoogleSubscriptionRTDN:
    """Real-Time Developer Notification for a subscription."""

    notification_type: int
    purchase_token: str
    subscription_id: str
    package_name: str = ""
    event_time_millis: int = 0


@dataclass(frozen=True)
class GoogleOneTimeRTDN:
    """Real-Time Developer Notification for a one-time product."""

    notification_type: int
    purchase_token: str
    sku: str
    package_name: str = ""
    event_time_millis: int = 0


@dataclass(frozen=True)
class UnrecognizedNotification:
    """Parsed payload that carries nothing this engine acts on (test pings, voided purchases)."""

    vendor: Vendor | None
    reason: str


InboundNotification = (
    AppleNotificationEnvelope
    | GoogleSubscriptionRTDN
    | GoogleOneTimeRTDN
    | UnrecognizedNotification
)


class IngestStatus(str, Enum):
    """Vendor-facing outcome of a webhook delivery."""

    OK = "ok"
    IGNORED = "ignored"
    REVOKED = "revoked"
    PROCESSED = "processed"
    ERROR = "error"


@dataclass(frozen=True)
class IngestResult:
    """Result returned to the webhook host; every status means HTTP 200."""

    status: IngestStatus
    vendor: Vendor | None = None
    detail: str = ""
