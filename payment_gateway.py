"""
Payment gateway collaborator for escrow funding.

The core only sees the ``PaymentGateway`` interface. ``ChapaGateway`` is the
HTTP client for Chapa (https://chapa.co/), the hosted-checkout gateway used
to collect escrow deposits.

Configuration Required:
- CHAPA_SECRET_KEY: Secret key used as the bearer token
- CHAPA_API_URL: Transaction API base (defaults to the live endpoint)
- CHAPA_WEBHOOK_SECRET: Shared secret for webhook signatures (optional)
"""

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional, Any

import requests

from errors import PaymentGatewayError

logger = logging.getLogger(__name__)

STATUS_SUCCESS = 'success'
STATUS_PENDING = 'pending'
STATUS_FAILED = 'failed'

# Anything outside these two allow-lists is treated as failed
SUCCESS_STATUSES = {'success', 'successful', 'completed', 'paid'}
PENDING_STATUSES = {'pending', 'processing', 'queued', 'in_progress'}


def normalize_status(raw_status: Optional[str]) -> str:
    status = (raw_status or '').strip().lower()
    if status in SUCCESS_STATUSES:
        return STATUS_SUCCESS
    if status in PENDING_STATUSES:
        return STATUS_PENDING
    return STATUS_FAILED


@dataclass(frozen=True)
class PaymentInitResult:
    checkout_url: str
    external_ref: str


@dataclass(frozen=True)
class PaymentVerification:
    normalized_status: str
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    raw_status: Optional[str] = None


class PaymentGateway:
    """Interface consumed by the escrow ledger"""

    def initialize_payment(
        self,
        amount: Decimal,
        currency: str,
        reference: str,
        return_url: str,
        callback_url: str,
        payer_info: Dict[str, Any]
    ) -> PaymentInitResult:
        raise NotImplementedError

    def verify_payment(self, external_ref: str) -> PaymentVerification:
        raise NotImplementedError

    def verify_webhook_signature(self, body: bytes, signature: str) -> bool:
        raise NotImplementedError


class ChapaGateway(PaymentGateway):
    """
    Chapa API client.

    Usage:
        gateway = ChapaGateway(secret_key, api_url='https://api.chapa.co/v1/transaction')
        result = gateway.initialize_payment(
            amount=Decimal('900.00'),
            currency='ETB',
            reference='escrow_1_ab12cd34',
            return_url='https://yoursite.com/payments/chapa/return',
            callback_url='https://yoursite.com/api/payments/chapa/webhook',
            payer_info={'email': 'client@example.com', 'first_name': 'Abebe'}
        )
    """

    def __init__(self, secret_key: str, api_url: str, webhook_secret: str = '', timeout: float = 30):
        self.secret_key = secret_key
        self.api_url = api_url.rstrip('/')
        self.webhook_secret = webhook_secret
        self.timeout = timeout

    @classmethod
    def from_config(cls, config) -> 'ChapaGateway':
        return cls(
            secret_key=config.get('CHAPA_SECRET_KEY', ''),
            api_url=config.get('CHAPA_API_URL', 'https://api.chapa.co/v1/transaction'),
            webhook_secret=config.get('CHAPA_WEBHOOK_SECRET', ''),
            timeout=config.get('PAYMENT_GATEWAY_TIMEOUT', 30)
        )

    def is_available(self) -> bool:
        """Check if the gateway is configured"""
        return bool(self.secret_key)

    def _make_request(self, endpoint: str, data: Optional[Dict[str, Any]] = None, method: str = 'POST') -> Dict:
        """Make API request to Chapa, raising PaymentGatewayError on any failure"""
        if not self.is_available():
            raise PaymentGatewayError('Chapa secret key is not configured')

        url = f"{self.api_url}/{endpoint}"
        headers = {
            'Authorization': f'Bearer {self.secret_key}',
            'Content-Type': 'application/json'
        }

        try:
            if method == 'POST':
                response = requests.post(url, json=data, headers=headers, timeout=self.timeout)
            else:
                response = requests.get(url, headers=headers, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            logger.error(f"Payment gateway unreachable ({endpoint}): {e}")
            raise PaymentGatewayError('Payment gateway is unreachable, please try again', retryable=True) from e

        try:
            payload = response.json()
        except ValueError:
            payload = {}

        if response.status_code >= 500:
            logger.error(f"Payment gateway unreachable ({endpoint}): HTTP {response.status_code}")
            raise PaymentGatewayError('Payment gateway is unavailable, please try again', retryable=True)

        if not response.ok or payload.get('status') != 'success':
            message = payload.get('message') or f'Payment gateway rejected the request (HTTP {response.status_code})'
            if not isinstance(message, str):
                message = json.dumps(message)
            logger.warning(f"Payment gateway rejected {endpoint}: {message}")
            raise PaymentGatewayError(message)

        return payload

    def initialize_payment(self, amount, currency, reference, return_url, callback_url, payer_info):
        """
        Create a hosted checkout for an escrow deposit

        Args:
            amount: Amount to collect
            currency: ISO currency code
            reference: Our unique transaction reference (tx_ref)
            return_url: Where the payer lands after checkout
            callback_url: Webhook URL for payment notifications
            payer_info: email, first_name, last_name, title, description

        Returns:
            PaymentInitResult with checkout_url and the external reference
        """
        data = {
            'amount': f"{Decimal(amount):.2f}",
            'currency': currency,
            'tx_ref': reference,
            'return_url': return_url,
            'callback_url': callback_url,
            'email': payer_info.get('email'),
            'first_name': payer_info.get('first_name'),
            'last_name': payer_info.get('last_name'),
            'customization': {
                'title': payer_info.get('title', 'Escrow'),
                'description': payer_info.get('description', '')
            }
        }

        payload = self._make_request('initialize', data)
        checkout_url = (payload.get('data') or {}).get('checkout_url')
        if not checkout_url:
            raise PaymentGatewayError(payload.get('message') or 'Failed to initialize payment')

        return PaymentInitResult(
            checkout_url=checkout_url,
            external_ref=(payload.get('data') or {}).get('tx_ref') or reference
        )

    def verify_payment(self, external_ref):
        """Look up the status of a payment by its reference"""
        payload = self._make_request(f'verify/{external_ref}', method='GET')
        data = payload.get('data')
        if not data:
            raise PaymentGatewayError(payload.get('message') or 'Failed to verify payment')

        amount = data.get('amount')
        return PaymentVerification(
            normalized_status=normalize_status(data.get('status')),
            amount=Decimal(str(amount)) if amount is not None else None,
            currency=data.get('currency'),
            raw_status=data.get('status')
        )

    def verify_webhook_signature(self, body: bytes, signature: str) -> bool:
        """
        Verify a webhook signature (HMAC-SHA256 of the raw body)

        Returns True when no webhook secret is configured.
        """
        if not self.webhook_secret:
            return True
        if not signature:
            return False
        expected_signature = hmac.new(
            self.webhook_secret.encode('utf-8'),
            body,
            hashlib.sha256
        ).hexdigest()
        return hmac.compare_digest(expected_signature, signature)
