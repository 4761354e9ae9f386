"""
Apple Signature Verifier.

NO DICTIONARIES - Decoded payloads are returned as strongly typed models.

Issues ES256 tokens for the App Store Server API and verifies every JWS Apple
sends us (signedTransactionInfo, signedRenewalInfo, notification
signedPayload). A JWS carrying an x5c header is checked against its
certificate chain and the configured Apple roots; one carrying only a kid is
checked against Apple's published key set.
https://developer.apple.com/documentation/appstoreserverapi
"""

import base64
import binascii
import json
import time
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from typing import Any

import jwt
from cryptography import x509
from structlog import get_logger

from iap_engine.exceptions import SignatureInvalidError, VerificationFailedError
from iap_engine.models.apple import (
    AppleNotification,
    AppleRenewalInfo,
    AppleStoreKitConfig,
    AppleTransaction,
)
from iap_engine.services.apple_certificates import decode_x5c, verify_certificate_chain
from iap_engine.services.apple_jwks import AppleJWKSCache

logger = get_logger(__name__)

API_TOKEN_AUDIENCE = "appstoreconnect-v1"
API_TOKEN_LIFETIME_SECONDS = 600
SIGNING_ALGORITHM = "ES256"


def load_private_key(value: str) -> str:
    """
    Normalize a configured .p8 key to PEM text.

    Accepts the PEM itself or base64 of the PEM (how keys are usually stored
    in environment variables).

    Raises:
        ValueError: If the value is neither
    """
    value = value.strip()
    if "BEGIN" in value:
        return value.replace("\\n", "\n")
    try:
        decoded = base64.b64decode(value, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        raise ValueError("private key is neither PEM nor base64 PEM") from e
    if "BEGIN" not in decoded:
        raise ValueError("decoded private key is not PEM")
    return decoded


def _int(data: dict[str, Any], key: str) -> int | None:
    """
    Read an integer claim; None when absent.

    Raises:
        VerificationFailedError: If the claim is not an integer
    """
    value = data.get(key)
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError) as e:
        raise VerificationFailedError(f"malformed {key} claim: {value!r}") from e


def _ms_to_datetime(data: dict[str, Any], key: str) -> datetime | None:
    millis = _int(data, key)
    if not millis:
        return None
    try:
        return datetime.fromtimestamp(millis / 1000, tz=UTC)
    except (OverflowError, OSError, ValueError) as e:
        raise VerificationFailedError(f"malformed {key} claim: {millis}") from e


def _str(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    return str(value).strip()


def _transaction_from_claims(data: dict[str, Any], signed: str) -> AppleTransaction:
    return AppleTransaction(
        transaction_id=_str(data, "transactionId"),
        original_transaction_id=_str(data, "originalTransactionId"),
        product_id=_str(data, "productId"),
        bundle_id=_str(data, "bundleId"),
        environment=_str(data, "environment"),
        raw=signed,
        type=_str(data, "type"),
        quantity=_int(data, "quantity") or 1,
        purchase_date=_ms_to_datetime(data, "purchaseDate"),
        expires_date=_ms_to_datetime(data, "expiresDate"),
        revocation_date=_ms_to_datetime(data, "revocationDate"),
        revocation_reason=_int(data, "revocationReason"),
        app_account_token=data.get("appAccountToken"),
    )


class AppleSignatureVerifier:
    """
    Apple JWS verification and API token issuance.

    Verification needs the key set and, for x5c-signed payloads, trusted root
    certificates; token issuance needs API credentials.
    """

    def __init__(
        self,
        jwks_cache: AppleJWKSCache,
        config: AppleStoreKitConfig | None = None,
        *,
        bundle_id: str | None = None,
        trusted_roots: Sequence[x509.Certificate] = (),
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.jwks_cache = jwks_cache
        self.config = config
        if bundle_id is None:
            bundle_id = config.bundle_id if config else ""
        self.bundle_id = bundle_id.strip()
        self.trusted_roots = list(trusted_roots)
        self._clock = clock
        self._private_key = load_private_key(config.private_key) if config else None

    def issue_api_token(self) -> str:
        """
        Issue a bearer token for the App Store Server API.

        Tokens live for ten minutes and are issued fresh for every request.
        """
        if self.config is None or self._private_key is None:
            raise VerificationFailedError("apple api credentials are not configured")

        now = int(self._clock())
        payload: dict[str, Any] = {
            "iss": self.config.issuer_id,
            "iat": now,
            "exp": now + API_TOKEN_LIFETIME_SECONDS,
            "aud": API_TOKEN_AUDIENCE,
        }
        if self.bundle_id:
            payload["bid"] = self.bundle_id

        return jwt.encode(
            payload,
            self._private_key,
            algorithm=SIGNING_ALGORITHM,
            headers={"kid": self.config.key_id},
        )

    async def verify_jws(self, token: str) -> dict[str, Any]:
        """
        Verify a compact JWS and return its JSON payload.

        The x5c certificate chain wins over kid when both are present.

        Raises:
            SignatureInvalidError: If the token is malformed, uses another
                algorithm, names an unknown key, carries an untrusted
                certificate chain or fails verification
            VendorAPIError: If the key set could not be fetched
        """
        token = (token or "").strip()
        if not token:
            raise SignatureInvalidError("empty signed payload")
        if token.count(".") != 2:
            raise SignatureInvalidError("not a compact JWS")

        try:
            header = jwt.get_unverified_header(token)
        except jwt.PyJWTError as e:
            raise SignatureInvalidError(f"malformed header: {e}") from e

        if header.get("alg") != SIGNING_ALGORITHM:
            raise SignatureInvalidError(f"unexpected algorithm: {header.get('alg')}")
        key: Any
        if "x5c" in header:
            try:
                leaf = verify_certificate_chain(
                    decode_x5c(header["x5c"]),
                    self.trusted_roots,
                    datetime.fromtimestamp(self._clock(), tz=UTC),
                )
            except SignatureInvalidError as e:
                logger.warning("apple_certificate_chain_rejected", error=e.message)
                raise
            key = leaf.public_key()
            signer = leaf.subject.rfc4514_string()
        else:
            kid = header.get("kid")
            if not kid:
                raise SignatureInvalidError("missing kid and x5c")
            key = (await self.jwks_cache.get_key(kid)).key
            signer = kid

        try:
            payload_bytes = jwt.PyJWS().decode(token, key, algorithms=[SIGNING_ALGORITHM])
        except jwt.PyJWTError as e:
            logger.warning("apple_jws_verification_failed", signer=signer, error=str(e))
            raise SignatureInvalidError(str(e)) from e

        try:
            payload = json.loads(payload_bytes)
        except ValueError as e:
            raise SignatureInvalidError("payload is not JSON") from e
        if not isinstance(payload, dict):
            raise SignatureInvalidError("payload is not a JSON object")
        return payload

    async def decode_transaction(self, signed: str) -> AppleTransaction:
        """Verify and decode signedTransactionInfo."""
        data = await self.verify_jws(signed)
        return _transaction_from_claims(data, signed)

    @staticmethod
    def read_embedded_transaction(signed: str) -> AppleTransaction:
        """
        Decode a nested signedTransactionInfo without checking its own signature.

        Only for JWS carried inside a notification whose signedPayload has
        already been verified; the outer signature covers the nested token.

        Raises:
            SignatureInvalidError: If the token cannot be decoded
            VerificationFailedError: If a claim is malformed
        """
        try:
            data = jwt.decode(signed, options={"verify_signature": False})
        except jwt.PyJWTError as e:
            raise SignatureInvalidError(f"undecodable nested transaction: {e}") from e
        return _transaction_from_claims(data, signed)

    async def decode_renewal_info(self, signed: str) -> AppleRenewalInfo:
        """Verify and decode signedRenewalInfo."""
        data = await self.verify_jws(signed)
        return AppleRenewalInfo(
            original_transaction_id=_str(data, "originalTransactionId"),
            auto_renew_product_id=_str(data, "autoRenewProductId") or _str(data, "productId"),
            environment=_str(data, "environment"),
            signed_date=_int(data, "signedDate") or 0,
            bundle_id=_str(data, "bundleId"),
            auto_renew_status=_int(data, "autoRenewStatus") or 0,
            raw=signed,
        )

    async def decode_notification(self, signed_payload: str) -> AppleNotification:
        """
        Verify and decode a notification signedPayload.

        Raises:
            SignatureInvalidError: If the outer JWS does not verify
            VerificationFailedError: If the notification names another bundle
                or carries a malformed claim
        """
        data = await self.verify_jws(signed_payload)
        body = data.get("data")
        if not isinstance(body, dict):
            body = {}

        bundle_id = _str(body, "bundleId")
        if self.bundle_id and bundle_id and bundle_id != self.bundle_id:
            logger.warning(
                "apple_notification_bundle_mismatch",
                expected=self.bundle_id,
                received=bundle_id,
            )
            raise VerificationFailedError(f"bundle id mismatch: {bundle_id}")

        return AppleNotification(
            notification_type=_str(data, "notificationType").upper(),
            subtype=_str(data, "subtype").upper(),
            notification_uuid=_str(data, "notificationUUID"),
            version=_str(data, "version"),
            signed_date=_int(data, "signedDate") or 0,
            bundle_id=bundle_id,
            environment=_str(body, "environment"),
            signed_transaction_info=_str(body, "signedTransactionInfo"),
            signed_renewal_info=_str(body, "signedRenewalInfo"),
            raw=signed_payload,
        )
