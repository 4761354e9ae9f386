"""
Tests for GoogleReceiptVerifier.

The androidpublisher resource is a MagicMock; HttpError is raised with an
httplib2 response the way googleapiclient raises it.
"""

import base64
import json
from datetime import UTC, datetime, timedelta

import httplib2
import pytest
from googleapiclient.errors import HttpError
from hypothesis import given
from hypothesis import strategies as st

from iap_engine.exceptions import VendorAPIError, VerificationFailedError
from iap_engine.models.domain import CanonicalPurchaseState
from iap_engine.models.google_play import (
    STATUS_ACTIVE,
    STATUS_CANCELED,
    STATUS_EXPIRED,
    STATUS_PENDING,
    STATUS_PURCHASED,
    STATUS_UNKNOWN,
)
from iap_engine.services.google_play_provider import (
    load_service_account_info,
    parse_rfc3339,
    summarize_line_items,
)

from .conftest import PACKAGE_NAME, fixed_now, subscription_response

NOW = fixed_now()
PAST = "2024-12-01T00:00:00.000Z"
FUTURE = "2025-02-01T00:00:00.123456789Z"


def http_error(status: int) -> HttpError:
    content = json.dumps({"error": {"code": status, "message": "request failed"}}).encode()
    return HttpError(httplib2.Response({"status": status}), content)


class TestParseRfc3339:
    """Tests for Publisher API timestamps."""

    def test_zulu(self):
        assert parse_rfc3339("2025-01-08T12:00:00Z") == datetime(2025, 1, 8, 12, tzinfo=UTC)

    def test_nanoseconds_truncated(self):
        parsed = parse_rfc3339("2025-02-01T00:00:00.123456789Z")
        assert parsed == datetime(2025, 2, 1, 0, 0, 0, 123456, tzinfo=UTC)

    def test_short_fraction(self):
        parsed = parse_rfc3339("2025-02-01T00:00:00.5Z")
        assert parsed is not None
        assert parsed.microsecond == 500000

    @pytest.mark.parametrize("value", [None, "", "yesterday"])
    def test_unparseable(self, value):
        assert parse_rfc3339(value) is None


class TestSummarizeLineItems:
    """Tests for subscription line-item reduction."""

    def test_any_future_expiry_is_active(self):
        summary = summarize_line_items(
            [{"expiryTime": PAST, "productId": "old"}, {"expiryTime": FUTURE, "productId": "new"}],
            NOW,
        )
        assert summary.active is True
        assert summary.latest_expiry == parse_rfc3339(FUTURE)

    def test_all_past_is_inactive(self):
        summary = summarize_line_items(
            [{"expiryTime": PAST}, {"expiryTime": "2024-11-01T00:00:00Z"}], NOW
        )
        assert summary.active is False
        assert summary.latest_expiry == parse_rfc3339(PAST)

    def test_first_non_empty_identifiers(self):
        summary = summarize_line_items(
            [
                {"expiryTime": PAST, "productId": ""},
                {"expiryTime": PAST, "productId": "service_1m", "latestSuccessfulOrderId": "GPA.1"},
                {"expiryTime": PAST, "productId": "rent_3m", "latestSuccessfulOrderId": "GPA.2"},
            ],
            NOW,
        )
        assert summary.product_id == "service_1m"
        assert summary.order_id == "GPA.1"

    def test_no_items(self):
        summary = summarize_line_items([], NOW)
        assert summary.active is False
        assert summary.latest_expiry is None

    @given(
        st.lists(
            st.integers(min_value=-10_000_000, max_value=10_000_000).filter(lambda s: s != 0),
            min_size=1,
            max_size=8,
        )
    )
    def test_active_iff_any_expiry_in_future(self, offsets):
        items = [
            {"expiryTime": (NOW + timedelta(seconds=offset)).isoformat().replace("+00:00", "Z")}
            for offset in offsets
        ]
        summary = summarize_line_items(items, NOW)
        assert summary.active is any(offset > 0 for offset in offsets)
        assert summary.latest_expiry == NOW + timedelta(seconds=max(offsets))


class TestLoadServiceAccountInfo:
    """Tests for credential loading."""

    def test_raw_json(self):
        assert load_service_account_info('{"type": "service_account"}') == {
            "type": "service_account"
        }

    def test_base64_json(self):
        encoded = base64.b64encode(b'{"type": "service_account"}').decode()
        assert load_service_account_info(encoded)["type"] == "service_account"

    def test_file_path(self, tmp_path):
        path = tmp_path / "key.json"
        path.write_text(json.dumps({"type": "service_account"}))
        assert load_service_account_info(str(path))["type"] == "service_account"

    def test_garbage(self):
        with pytest.raises(ValueError):
            load_service_account_info("not json at all!")

    def test_non_object(self):
        with pytest.raises(ValueError, match="object"):
            load_service_account_info(base64.b64encode(b"[1]").decode())


class TestVerifyProduct:
    """Tests for one-time product verification."""

    @pytest.mark.asyncio
    async def test_purchased(self, google_verifier, google_service):
        purchase = await google_verifier.verify_product("responses10", "token-0001")

        assert purchase.status == STATUS_PURCHASED
        assert purchase.purchase_state == 0
        assert purchase.canonical_state == CanonicalPurchaseState.PURCHASED
        assert purchase.acknowledged is False
        assert purchase.order_id == "GPA.1234-5678-9012-34567"
        google_service.purchases().products().get.assert_called_with(
            packageName=PACKAGE_NAME, productId="responses10", token="token-0001"
        )

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "raw_state,status,state",
        [
            (1, STATUS_CANCELED, CanonicalPurchaseState.REVOKED),
            (2, STATUS_PENDING, CanonicalPurchaseState.PENDING),
            (7, STATUS_UNKNOWN, CanonicalPurchaseState.UNKNOWN),
        ],
    )
    async def test_other_states(self, google_verifier, google_service, raw_state, status, state):
        google_service.purchases().products().get().execute.return_value = {
            "purchaseState": raw_state
        }
        purchase = await google_verifier.verify_product("responses10", "token-0001")
        assert purchase.status == status
        assert purchase.purchase_state == 1
        assert purchase.canonical_state == state

    @pytest.mark.asyncio
    async def test_acknowledged_and_consumed(self, google_verifier, google_service):
        google_service.purchases().products().get().execute.return_value = {
            "purchaseState": 0,
            "acknowledgementState": 1,
            "consumptionState": 1,
        }
        purchase = await google_verifier.verify_product("responses10", "token-0001")
        assert purchase.acknowledged is True
        assert purchase.consumed is True

    @pytest.mark.asyncio
    async def test_requires_token(self, google_verifier):
        with pytest.raises(VerificationFailedError, match="required"):
            await google_verifier.verify_product("responses10", " ")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [400, 404, 410])
    async def test_rejected_token(self, google_verifier, google_service, status):
        google_service.purchases().products().get().execute.side_effect = http_error(status)
        with pytest.raises(VerificationFailedError):
            await google_verifier.verify_product("responses10", "token-0001")

    @pytest.mark.asyncio
    async def test_server_error(self, google_verifier, google_service):
        google_service.purchases().products().get().execute.side_effect = http_error(503)
        with pytest.raises(VendorAPIError) as exc_info:
            await google_verifier.verify_product("responses10", "token-0001")
        assert exc_info.value.status_code == 503


class TestVerifySubscription:
    """Tests for subscriptionsv2 verification."""

    @pytest.mark.asyncio
    async def test_active(self, google_verifier, google_service):
        google_service.purchases().subscriptionsv2().get().execute.return_value = (
            subscription_response((PAST, FUTURE))
        )
        purchase = await google_verifier.verify_subscription("token-0001")

        assert purchase.status == STATUS_ACTIVE
        assert purchase.is_active()
        assert purchase.is_subscription()
        assert purchase.product_id == "service_1m"
        assert purchase.order_id == "GPA.1111-2222-3333-44444"
        assert purchase.expiry_time == parse_rfc3339(FUTURE)

    @pytest.mark.asyncio
    async def test_all_expired(self, google_verifier, google_service):
        google_service.purchases().subscriptionsv2().get().execute.return_value = (
            subscription_response((PAST, "2024-10-01T00:00:00Z"))
        )
        purchase = await google_verifier.verify_subscription("token-0001")
        assert purchase.status == STATUS_EXPIRED
        assert purchase.is_active() is False

    @pytest.mark.asyncio
    async def test_canceled_but_unexpired_still_entitles(self, google_verifier, google_service):
        google_service.purchases().subscriptionsv2().get().execute.return_value = (
            subscription_response((FUTURE,), state="SUBSCRIPTION_STATE_CANCELED")
        )
        purchase = await google_verifier.verify_subscription("token-0001")
        assert purchase.status == STATUS_CANCELED
        assert purchase.is_active() is True

    @pytest.mark.asyncio
    async def test_pending(self, google_verifier, google_service):
        google_service.purchases().subscriptionsv2().get().execute.return_value = (
            subscription_response((FUTURE,), state="SUBSCRIPTION_STATE_PENDING")
        )
        purchase = await google_verifier.verify_subscription("token-0001")
        assert purchase.canonical_state == CanonicalPurchaseState.PENDING

    @pytest.mark.asyncio
    async def test_subscription_id_matching_line_item(self, google_verifier, google_service):
        purchase = await google_verifier.verify_subscription("token-0001", "service_1m")
        assert purchase.product_id == "service_1m"
        assert purchase.is_active()

    @pytest.mark.asyncio
    async def test_subscription_id_not_in_line_items(self, google_verifier, google_service):
        with pytest.raises(VerificationFailedError, match="seats5"):
            await google_verifier.verify_subscription("token-0001", "seats5")

    @pytest.mark.asyncio
    async def test_activity_taken_from_matching_line_item(self, google_verifier, google_service):
        response = subscription_response((PAST,), product_id="rent_3m")
        response["lineItems"].append(
            {
                "productId": "service_1m",
                "expiryTime": FUTURE,
                "latestSuccessfulOrderId": "GPA.5555-6666-7777-88888",
            }
        )
        google_service.purchases().subscriptionsv2().get().execute.return_value = response

        expired = await google_verifier.verify_subscription("token-0001", "rent_3m")
        active = await google_verifier.verify_subscription("token-0001", "service_1m")

        assert expired.status == STATUS_EXPIRED
        assert expired.expiry_time == parse_rfc3339(PAST)
        assert active.status == STATUS_ACTIVE
        assert active.order_id == "GPA.5555-6666-7777-88888"

    @pytest.mark.asyncio
    async def test_acknowledged(self, google_verifier, google_service):
        google_service.purchases().subscriptionsv2().get().execute.return_value = (
            subscription_response((FUTURE,), acknowledged=True)
        )
        purchase = await google_verifier.verify_subscription("token-0001")
        assert purchase.acknowledged is True


class TestAcknowledgeAndConsume:
    """Tests for post-apply vendor calls."""

    @pytest.mark.asyncio
    async def test_acknowledge_product(self, google_verifier, google_service):
        await google_verifier.acknowledge_product("top7", "token-0001")
        google_service.purchases().products().acknowledge.assert_called_with(
            packageName=PACKAGE_NAME, productId="top7", token="token-0001", body={}
        )

    @pytest.mark.asyncio
    async def test_consume_product(self, google_verifier, google_service):
        await google_verifier.consume_product("responses10", "token-0001")
        google_service.purchases().products().consume.assert_called_with(
            packageName=PACKAGE_NAME, productId="responses10", token="token-0001"
        )

    @pytest.mark.asyncio
    async def test_acknowledge_subscription(self, google_verifier, google_service):
        await google_verifier.acknowledge_subscription("service_1m", "token-0001")
        google_service.purchases().subscriptions().acknowledge.assert_called_with(
            packageName=PACKAGE_NAME,
            subscriptionId="service_1m",
            token="token-0001",
            body={},
        )

    @pytest.mark.asyncio
    async def test_acknowledge_not_found_is_vendor_error(self, google_verifier, google_service):
        """Only lookups map 404 to a verification failure."""
        google_service.purchases().products().acknowledge().execute.side_effect = http_error(404)
        with pytest.raises(VendorAPIError):
            await google_verifier.acknowledge_product("top7", "token-0001")
