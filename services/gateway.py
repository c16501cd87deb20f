"""Payment gateway collaborator.

The billing core never charges anyone itself.  It asks the gateway to open
an order (for the storefront to complete) and, when a confirmation arrives,
asks whether the order/signature pair is genuine.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from decimal import Decimal

import requests
from requests.exceptions import RequestException

from config_models import GatewayConfig
from errors import ExternalDependencyError

logger = logging.getLogger(__name__)

GATEWAY_KEY = "billing_gateway"


class PaymentGateway:
    """Interface consumed by the payment recorder."""

    name = "gateway"

    def create_order(self, amount: Decimal, currency: str) -> str:
        raise NotImplementedError

    def verify_payment(self, order_ref: str, signature: str) -> bool:
        raise NotImplementedError


class DisabledPaymentGateway(PaymentGateway):
    """Installed when no gateway is configured; every call is refused."""

    name = "disabled"

    def create_order(self, amount: Decimal, currency: str) -> str:
        raise ExternalDependencyError("No payment gateway is configured.")

    def verify_payment(self, order_ref: str, signature: str) -> bool:
        raise ExternalDependencyError("No payment gateway is configured.")


class HttpPaymentGateway(PaymentGateway):
    """REST gateway client (Razorpay-style orders with HMAC signatures)."""

    def __init__(self, config: GatewayConfig, session: requests.Session | None = None):
        self.config = config
        self.name = config.name
        self.session = session or requests.Session()
        self.session.auth = (config.api_key, config.api_secret)

    def _request(self, method: str, path: str, **kwargs) -> dict:
        url = f"{self.config.base_url.rstrip('/')}/{path.lstrip('/')}"
        try:
            response = self.session.request(method, url, timeout=self.config.timeout, **kwargs)
            response.raise_for_status()
            return response.json()
        except requests.exceptions.Timeout:
            logger.error("Timeout calling %s %s", method, url)
            raise ExternalDependencyError(f"Payment gateway {self.name} timed out.")
        except requests.exceptions.ConnectionError as e:
            logger.error("Connection error calling %s %s: %s", method, url, e)
            raise ExternalDependencyError(f"Could not connect to payment gateway {self.name}.")
        except requests.exceptions.HTTPError as e:
            logger.error("HTTP error calling %s %s: %s", method, url, e)
            raise ExternalDependencyError(f"Payment gateway {self.name} returned an error.")
        except (RequestException, ValueError) as e:
            logger.error("Request to %s %s failed: %s", method, url, e)
            raise ExternalDependencyError(f"Request to payment gateway {self.name} failed.")

    def sign(self, order_ref: str) -> str:
        return hmac.new(
            self.config.api_secret.encode("utf-8"),
            order_ref.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    def create_order(self, amount: Decimal, currency: str) -> str:
        # Gateways take amounts in the minor unit
        minor_units = int((Decimal(amount) * 100).to_integral_value())
        data = self._request("POST", "/orders", json={"amount": minor_units, "currency": currency})
        order_ref = data.get("id")
        if not order_ref:
            raise ExternalDependencyError(f"Payment gateway {self.name} returned no order id.")
        logger.info("Created gateway order %s for %s %s", order_ref, amount, currency)
        return order_ref

    def verify_payment(self, order_ref: str, signature: str) -> bool:
        """Check the signature locally, then confirm the order is paid."""
        if not hmac.compare_digest(self.sign(order_ref), signature or ""):
            logger.warning("Signature mismatch for gateway order %s", order_ref)
            return False
        data = self._request("GET", f"/orders/{order_ref}")
        return data.get("status") == "paid"


def build_gateway(config: GatewayConfig) -> PaymentGateway:
    if not config.enabled or not config.base_url:
        return DisabledPaymentGateway()
    return HttpPaymentGateway(config)
