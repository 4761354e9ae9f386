"""
Apple Transaction Fetcher.

Looks up a transaction through the App Store Server API and verifies the
signedTransactionInfo it returns.
"""

from dataclasses import replace

import httpx
from structlog import get_logger

from iap_engine.exceptions import IAPError, VendorAPIError, VerificationFailedError
from iap_engine.models.apple import AppleStoreKitConfig, AppleTransaction, api_base_url
from iap_engine.observability.tracing import vendor_call_span
from iap_engine.services.apple_signature import AppleSignatureVerifier

logger = get_logger(__name__)


class AppleTransactionFetcher:
    """
    App Store Server API client for transaction lookup.

    Environments are tried in config order. A failure in one environment
    falls through to the next; a verified transaction that contradicts the
    request stops the search.
    """

    def __init__(
        self,
        config: AppleStoreKitConfig,
        verifier: AppleSignatureVerifier,
        *,
        timeout_seconds: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self.verifier = verifier
        self.timeout_seconds = timeout_seconds
        self._transport = transport

        logger.info(
            "apple_transaction_fetcher_initialized",
            bundle_id=config.bundle_id,
            environments=list(config.environments),
        )

    async def _fetch_signed_transaction(self, transaction_id: str, environment: str) -> str:
        """GET /inApps/v1/transactions/{id} in one environment."""
        url = f"{api_base_url(environment)}/inApps/v1/transactions/{transaction_id}"
        headers = {
            "Authorization": f"Bearer {self.verifier.issue_api_token()}",
            "Accept": "application/json",
        }

        try:
            with vendor_call_span("apple", "get_transaction", environment=environment):
                async with httpx.AsyncClient(transport=self._transport) as client:
                    response = await client.get(url, headers=headers, timeout=self.timeout_seconds)
                if response.status_code >= 400:
                    raise VendorAPIError(
                        "apple",
                        f"{environment}: HTTP {response.status_code} ({response.text.strip()[:200]})",
                        status_code=response.status_code,
                    )
        except httpx.HTTPError as exc:
            raise VendorAPIError("apple", f"{environment}: {exc}") from exc

        try:
            body = response.json()
        except ValueError as exc:
            raise VendorAPIError("apple", f"{environment}: response is not JSON") from exc

        signed = ""
        if isinstance(body, dict):
            signed = str(body.get("signedTransactionInfo") or "").strip()
        if not signed:
            raise VendorAPIError("apple", f"{environment}: empty signedTransactionInfo")
        return signed

    async def verify_transaction(self, transaction_id: str) -> AppleTransaction:
        """
        Fetch and verify a transaction.

        Args:
            transaction_id: Transaction id reported by the client

        Returns:
            Verified transaction

        Raises:
            VerificationFailedError: If the id or bundle does not match, or no
                environment produced a verifiable transaction
        """
        transaction_id = transaction_id.strip()
        if not transaction_id:
            raise VerificationFailedError("transaction_id is required")

        last_error: Exception | None = None
        for environment in self.config.environments:
            try:
                signed = await self._fetch_signed_transaction(transaction_id, environment)
                transaction = await self.verifier.decode_transaction(signed)
            except IAPError as exc:
                logger.warning(
                    "apple_transaction_environment_failed",
                    transaction_id=transaction_id,
                    environment=environment,
                    status_code=getattr(exc, "status_code", None),
                    error=str(exc),
                )
                last_error = exc
                continue

            if not transaction.transaction_id:
                transaction = replace(transaction, transaction_id=transaction_id)
            if transaction.transaction_id != transaction_id:
                raise VerificationFailedError(
                    f"transaction id mismatch: expected {transaction_id} "
                    f"got {transaction.transaction_id}"
                )
            if (
                self.config.bundle_id
                and transaction.bundle_id
                and transaction.bundle_id != self.config.bundle_id
            ):
                raise VerificationFailedError(f"bundle id mismatch: {transaction.bundle_id}")
            if not transaction.environment:
                transaction = replace(transaction, environment=environment)

            logger.info(
                "apple_transaction_verified",
                transaction_id=transaction.transaction_id,
                original_transaction_id=transaction.original_transaction_id,
                product_id=transaction.product_id,
                environment=transaction.environment,
            )
            return transaction

        logger.error(
            "apple_transaction_verification_failed",
            transaction_id=transaction_id,
            error=str(last_error),
        )
        message = str(last_error) if last_error else "failed to fetch transaction from apple api"
        raise VerificationFailedError(message) from last_error
