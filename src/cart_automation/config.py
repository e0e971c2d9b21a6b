"""Configuration management for the cart automation service."""

from __future__ import annotations

from pathlib import Path

from common.config import Settings as BaseSettings

from cart_automation.models import PaymentDetails


class Settings(BaseSettings):
    """Cart automation configuration.

    Inherits logging and environment options from ``common.config.Settings``
    and adds run storage, notification, retailer and payment options.
    """

    # Service identity
    service_name: str = "cart-automation"
    service_version: str = "0.1.0"
    host: str = "0.0.0.0"
    port: int = 8030

    # Empty disables API key checks
    api_key: str = ""

    # Run state
    state_file: Path = Path("data/runs.json")

    # Slack notifications
    slack_bot_token: str = ""
    slack_channel_id: str = ""
    slack_api_url: str = "https://slack.com/api/chat.postMessage"
    # Verifies slash command requests; empty rejects them all
    slack_signing_secret: str = ""
    notification_timeout: float = 10.0

    # Retailer
    retailer_base_url: str = "https://www.target.com/"
    cart_url: str = "https://www.target.com/cart"
    checkout_url: str = "https://www.target.com/checkout"
    retailer_username: str = ""
    retailer_password: str = ""

    # Payment
    card_number: str = ""
    card_expiration: str = ""
    card_cvv: str = ""
    card_name: str = ""
    complete_order: bool = False

    # Automation backend
    automation_backend: str = "simulated"
    headless: bool = True
    simulated_success_rate: float = 0.8
    simulated_min_delay: float = 1.0
    simulated_max_delay: float = 3.0
    simulated_seed: int | None = None

    def payment_details(self) -> PaymentDetails:
        """Return the card details used by the checkout pass."""
        return PaymentDetails(
            card_number=self.card_number,
            card_expiration=self.card_expiration,
            card_cvv=self.card_cvv,
            card_name=self.card_name,
            complete_order=self.complete_order,
        )

    def retailer_credentials(self) -> tuple[str, str] | None:
        """Return ``(username, password)`` when both are configured."""
        if self.retailer_username and self.retailer_password:
            return self.retailer_username, self.retailer_password
        return None


def get_settings() -> Settings:
    """Return a settings instance loaded from the environment."""
    return Settings()
