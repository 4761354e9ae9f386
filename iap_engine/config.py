"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from iap_engine.models.apple import APPLE_PRODUCTION, APPLE_SANDBOX
from iap_engine.models.domain import parse_catalog
from iap_engine.services.apple_certificates import load_root_certificates


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    service_name: str = "iap-engine"
    service_version: str = "0.1.0"

    # Receipt store (optional - hosts may bring their own ReceiptStore)
    database_url: str = ""
    database_pool_size: int = 10
    database_max_overflow: int = 5
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600

    # Apple App Store Server API
    apple_iap_issuer_id: str = ""
    apple_iap_key_id: str = ""
    apple_iap_private_key: str = ""  # .p8 contents, PEM or base64
    apple_iap_bundle_id: str = ""
    apple_iap_environment: str = APPLE_PRODUCTION  # environment tried first
    apple_jwks_url: str = "https://apple.com/.well-known/appstoreconnect/keys"
    apple_jwks_ttl_seconds: int = 1800
    apple_jwks_refresh_margin_seconds: int = 300
    apple_api_timeout_seconds: float = 15.0
    # Comma-separated paths to Apple root certificates (DER .cer or PEM), e.g.
    # AppleRootCA-G3.cer; required to verify x5c-signed StoreKit 2 payloads
    apple_root_certificates: str = ""

    # Google Play Android Publisher API
    google_play_package_name: str = ""
    google_play_service_account_json: str = ""  # raw JSON, base64 JSON or file path

    # Product catalogs: {"<product id>": {"type": "responses", "quantity": 10}, ...}
    apple_iap_products: str = ""
    google_iap_products: str = ""

    # Listing types a boost may be bound to
    top_listing_types: str = "service,ad,work,work_ad,rent,rent_ad"

    # RTDN subscription notification types handled as revocations
    # (3 canceled, 12 revoked, 13 expired)
    google_revoke_notification_types: str = "3,12,13"

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability
    metrics_enabled: bool = True
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @property
    def apple_configured(self) -> bool:
        return bool(self.apple_iap_private_key.strip())

    @property
    def google_configured(self) -> bool:
        return bool(self.google_play_package_name.strip())

    @property
    def apple_root_certificate_paths(self) -> list[str]:
        return [item.strip() for item in self.apple_root_certificates.split(",") if item.strip()]

    @property
    def allowed_top_listing_types(self) -> frozenset[str]:
        """Boost allow-list, normalized to lower case."""
        return frozenset(
            item.strip().lower() for item in self.top_listing_types.split(",") if item.strip()
        )

    @property
    def revoke_notification_types(self) -> frozenset[int]:
        """Google RTDN subscription types treated as revocations."""
        return frozenset(
            int(item) for item in self.google_revoke_notification_types.split(",") if item.strip()
        )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        Vendors are optional, but a half-configured vendor or a malformed
        product catalog must stop the process instead of failing on the first
        purchase.
        """
        errors: list[str] = []

        if self.apple_configured:
            if not self.apple_iap_issuer_id.strip():
                errors.append("APPLE_IAP_ISSUER_ID is required when APPLE_IAP_PRIVATE_KEY is set")
            if not self.apple_iap_key_id.strip():
                errors.append("APPLE_IAP_KEY_ID is required when APPLE_IAP_PRIVATE_KEY is set")
        if self.apple_iap_environment.lower() not in (APPLE_PRODUCTION, APPLE_SANDBOX):
            errors.append(
                f"APPLE_IAP_ENVIRONMENT must be 'production' or 'sandbox', "
                f"got: {self.apple_iap_environment}"
            )

        try:
            load_root_certificates(self.apple_root_certificate_paths)
        except ValueError as exc:
            errors.append(f"APPLE_ROOT_CERTIFICATES: {exc}")

        has_package = bool(self.google_play_package_name.strip())
        has_account = bool(self.google_play_service_account_json.strip())
        if has_package != has_account:
            errors.append(
                "GOOGLE_PLAY_PACKAGE_NAME and GOOGLE_PLAY_SERVICE_ACCOUNT_JSON must be set together"
            )

        for name, raw in (
            ("APPLE_IAP_PRODUCTS", self.apple_iap_products),
            ("GOOGLE_IAP_PRODUCTS", self.google_iap_products),
        ):
            try:
                parse_catalog(raw)
            except ValueError as exc:
                errors.append(f"{name}: {exc}")

        try:
            _ = self.revoke_notification_types
        except ValueError:
            errors.append(
                "GOOGLE_REVOKE_NOTIFICATION_TYPES must be a comma-separated list of integers"
            )

        if self.database_url and not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}...")

        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - IAP ENGINE CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
