"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""


class IAPError(Exception):
    """Base exception for all in-app purchase errors."""

    pass


class VerificationFailedError(IAPError):
    """Raised when a vendor rejects a receipt or it cannot be verified."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Verification failed: {message}")


class SignatureInvalidError(VerificationFailedError):
    """Raised when a JWS signature is malformed, unknown or does not match."""

    def __init__(self, message: str) -> None:
        super().__init__(f"invalid signature: {message}")


class VendorAPIError(IAPError):
    """Raised when a vendor API call fails at the transport or HTTP level."""

    def __init__(self, vendor: str, message: str, status_code: int | None = None) -> None:
        self.vendor = vendor
        self.message = message
        self.status_code = status_code
        super().__init__(f"{vendor} API error: {message}")


class OwnershipConflictError(IAPError):
    """Raised when a purchase token already belongs to another account."""

    def __init__(self, vendor: str, receipt_key: str, owner_user_id: int, user_id: int) -> None:
        self.vendor = vendor
        self.receipt_key = receipt_key
        self.owner_user_id = owner_user_id
        self.user_id = user_id
        super().__init__(f"Purchase belongs to another user ({vendor})")


class UnsupportedProductError(IAPError):
    """Raised when a product id is not present in the catalog."""

    def __init__(self, product_id: str) -> None:
        self.product_id = product_id
        super().__init__(f"Unsupported product id: {product_id!r}")


class InvalidTargetError(IAPError):
    """Raised when an entitlement target or client binding fails validation."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Invalid target: {reason}")


class ApplyFailedError(IAPError):
    """Raised when an entitlement could not be applied (receipt rolled back)."""

    def __init__(
        self,
        target_kind: str,
        message: str,
        rollback_error: Exception | None = None,
    ) -> None:
        self.target_kind = target_kind
        self.message = message
        self.rollback_error = rollback_error
        detail = f"Apply {target_kind} failed: {message}"
        if rollback_error is not None:
            detail += f"; rollback failed: {rollback_error}"
        super().__init__(detail)


class ReceiptNotFoundError(IAPError):
    """Raised by receipt stores when no row matches the lookup."""

    def __init__(self, lookup: str) -> None:
        self.lookup = lookup
        super().__init__(f"Receipt not found: {lookup}")


class ReceiptAlreadyExistsError(IAPError):
    """Raised by receipt stores when the (vendor, key) uniqueness constraint fires."""

    def __init__(self, vendor: str, receipt_key: str) -> None:
        self.vendor = vendor
        self.receipt_key = receipt_key
        super().__init__(f"Receipt already exists for {vendor}")


class WebhookVerificationError(IAPError):
    """Raised when a webhook payload cannot be parsed or authenticated."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Webhook verification error: {message}")
