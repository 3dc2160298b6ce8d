"""
Payment gateway boundary.

The storefront asks the gateway for a payment order at checkout and learns
the outcome through signed webhooks. PaymentGateway is an offline stand-in
for the hosted provider: it issues references locally and checks webhook
signatures with the shared secret.
"""

import hashlib
import hmac
import os
from typing import Optional

from config import settings


class PaymentGatewayError(Exception):
    pass


class PaymentGateway:
    def __init__(self, webhook_secret: Optional[str] = None, currency: Optional[str] = None):
        self.webhook_secret = settings.payment_webhook_secret if webhook_secret is None else webhook_secret
        self.currency = currency or settings.payment_currency

    def create_order(self, amount: float, receipt: str) -> dict:
        """Register a payment order; amount is sent in minor units."""
        if amount <= 0:
            raise PaymentGatewayError("Amount must be positive")
        return {
            "id": "order_" + os.urandom(7).hex(),
            "amount": int(round(amount * 100)),
            "currency": self.currency,
            "receipt": receipt,
        }

    def sign(self, body: bytes) -> str:
        return hmac.new(self.webhook_secret.encode(), body, hashlib.sha256).hexdigest()

    def verify_signature(self, body: bytes, signature: Optional[str]) -> bool:
        if not signature or not self.webhook_secret:
            return False
        return hmac.compare_digest(self.sign(body), signature)


_gateway = PaymentGateway()


def get_gateway() -> PaymentGateway:
    return _gateway
