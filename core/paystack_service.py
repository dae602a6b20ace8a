# Paystack Payments Adapter
# Maps the escrow contract onto Paystack primitives:
#   escrow   -> the funding transaction, held on the platform balance; the
#               escrow reference is also the charge reference
#   fund     -> charge_authorization on the brand's saved card
#   release  -> transfer from balance to the creator's transfer recipient
#   refund   -> refund against the escrow transaction
import hmac
import hashlib
import json
import logging
from typing import Optional, Dict, Any

import requests

from core.payments import (
    PaymentsProvider, PartyRef, FundingResult, EscrowStatus,
    ProviderError, ProviderUnavailable, ProviderTimeout, InvalidCurrency,
    InsufficientFunds, PayerNotOnboarded, PayeeNotOnboarded
)
from schemas.provider_events import (
    ProviderEvent, ReleaseMetadata, FundingConfirmed, PayoutPaid, PayoutFailed,
    UnhandledEvent
)

logger = logging.getLogger(__name__)


class PaystackConfig:
    """Paystack configuration"""
    BASE_URL = "https://api.paystack.co"
    SUPPORTED_CURRENCIES = {"NGN", "GHS", "ZAR", "KES", "USD"}

    ESCROW_PREFIX = "esc-"
    RELEASE_PREFIX = "rel-"


def escrow_reference(deal_id: str, currency: str) -> str:
    """esc-<currency>-<deal id>; Paystack references allow only -, ., = and alphanumerics"""
    return f"{PaystackConfig.ESCROW_PREFIX}{currency.lower()}-{deal_id}"


def parse_escrow_reference(reference: str):
    """Inverse of escrow_reference. Returns (currency, deal_id)."""
    body = reference[len(PaystackConfig.ESCROW_PREFIX):]
    currency, _, deal_id = body.partition("-")
    return currency.upper(), deal_id


class PaystackService:
    """Thin HTTP client for the Paystack REST API"""

    def __init__(self, secret_key: str, base_url: str = PaystackConfig.BASE_URL, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.secret_key = secret_key
        self.timeout = timeout
        self.headers = {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json"
        }

    def _make_request(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict] = None,
        params: Optional[Dict] = None
    ) -> Dict[str, Any]:
        """
        Make a request to Paystack API.

        4xx answers are returned to the caller (Paystack reports business
        failures such as duplicate references that way); transport problems
        and 5xx answers are raised as provider errors.
        """
        url = f"{self.base_url}{endpoint}"
        try:
            response = requests.request(
                method,
                url,
                headers=self.headers,
                json=data,
                params=params,
                timeout=self.timeout
            )
        except requests.exceptions.Timeout as e:
            logger.error(f"Paystack API timeout on {method} {endpoint}: {e}")
            raise ProviderTimeout(f"Paystack timed out after {self.timeout}s")
        except requests.exceptions.ConnectionError as e:
            logger.error(f"Paystack API unreachable on {method} {endpoint}: {e}")
            raise ProviderUnavailable("Paystack is unreachable")
        except requests.exceptions.RequestException as e:
            logger.error(f"Paystack API error: {e}")
            raise ProviderError(f"Payment service error: {str(e)}")

        if response.status_code >= 500:
            logger.error(f"Paystack API {response.status_code} on {method} {endpoint}")
            raise ProviderUnavailable(f"Paystack returned {response.status_code}")

        try:
            body = response.json()
        except ValueError:
            raise ProviderError(f"Paystack returned a non-JSON body ({response.status_code})")

        body["_http_status"] = response.status_code
        return body

    def charge_authorization(
        self,
        email: str,
        amount: int,
        authorization_code: str,
        reference: str,
        currency: str,
        metadata: Optional[Dict] = None
    ) -> Dict[str, Any]:
        """
        Charge a saved card authorization

        Args:
            email: Customer's email
            amount: Amount in minor units
            authorization_code: Saved card authorization code
            reference: Unique reference, reused on retry
            currency: ISO currency code
            metadata: Additional transaction metadata

        Returns:
            Charge response
        """
        data = {
            "email": email,
            "amount": amount,
            "authorization_code": authorization_code,
            "reference": reference,
            "currency": currency,
            "metadata": metadata or {}
        }
        return self._make_request("POST", "/transaction/charge_authorization", data)

    def verify_transaction(self, reference: str) -> Dict[str, Any]:
        """Verify a Paystack transaction by reference"""
        return self._make_request("GET", f"/transaction/verify/{reference}")

    def initiate_transfer(
        self,
        amount: int,
        recipient_code: str,
        reference: str,
        currency: str,
        reason: str
    ) -> Dict[str, Any]:
        """Send money from the platform balance to a transfer recipient"""
        data = {
            "source": "balance",
            "amount": amount,
            "recipient": recipient_code,
            "reference": reference,
            "currency": currency,
            "reason": reason
        }
        return self._make_request("POST", "/transfer", data)

    def verify_transfer(self, reference: str) -> Dict[str, Any]:
        """Fetch a transfer by our reference"""
        return self._make_request("GET", f"/transfer/verify/{reference}")

    def create_refund(self, transaction_reference: str, amount: Optional[int] = None, note: str = "") -> Dict[str, Any]:
        """Refund a transaction fully (amount=None) or partially"""
        data = {"transaction": transaction_reference}
        if amount is not None:
            data["amount"] = amount
        if note:
            data["merchant_note"] = note
        return self._make_request("POST", "/refund", data)

    def list_refunds(self, transaction_reference: str) -> Dict[str, Any]:
        """List refunds already issued against a transaction"""
        return self._make_request("GET", "/refund", params={"reference": transaction_reference})


class PaystackProvider(PaymentsProvider):
    """Escrow contract implemented on top of Paystack"""

    name = "paystack"
    signature_header = "x-paystack-signature"

    def __init__(self, secret_key: str, base_url: str = PaystackConfig.BASE_URL, timeout: float = 30.0):
        self.secret_key = secret_key
        self.client = PaystackService(secret_key, base_url=base_url, timeout=timeout)

    # ------------------------------------------------------------------
    # Escrow lifecycle
    # ------------------------------------------------------------------

    def create_escrow(self, deal_id: str, currency: str) -> str:
        # Paystack has no hold object; the escrow is the funding charge itself,
        # so the reference is derived from the deal and never changes.
        if not self.secret_key:
            raise ProviderUnavailable("Paystack is not configured")
        if (currency or "").upper() not in PaystackConfig.SUPPORTED_CURRENCIES:
            raise InvalidCurrency(f"Currency {currency} is not supported by Paystack")
        return escrow_reference(deal_id, currency)

    def fund_escrow(
        self,
        escrow_ref: str,
        amount: int,
        payer: PartyRef,
        idempotency_key: Optional[str] = None
    ) -> FundingResult:
        if not payer.provider_code or not payer.email:
            raise PayerNotOnboarded(f"User {payer.user_id} has no saved payment authorization")

        # The charge reference is the escrow reference: Paystack rejects a
        # second charge with the same reference, which makes retries safe.
        reference = escrow_ref
        currency, deal_id = parse_escrow_reference(escrow_ref)
        response = self.client.charge_authorization(
            email=payer.email,
            amount=amount,
            authorization_code=payer.provider_code,
            reference=reference,
            currency=currency,
            metadata={"deal_id": deal_id, "escrow_ref": escrow_ref, "idempotency_key": idempotency_key}
        )

        if not response.get("status"):
            if self._is_duplicate(response):
                logger.info(f"Charge {reference} already exists, verifying instead of re-charging")
                response = self.client.verify_transaction(reference)
                if not response.get("status"):
                    raise ProviderError(response.get("message", "Failed to verify existing charge"))
            else:
                raise ProviderError(response.get("message", "Charge failed"))

        data = response.get("data") or {}
        charge_status = data.get("status")
        gateway_response = (data.get("gateway_response") or "").lower()

        if charge_status == "failed":
            if "insufficient" in gateway_response:
                raise InsufficientFunds(data.get("gateway_response") or "Insufficient funds")
            raise ProviderError(data.get("gateway_response") or "Charge failed")

        return FundingResult(payment_ref=data.get("reference") or reference, confirmed=charge_status == "success")

    def release_to_creator(
        self,
        escrow_ref: str,
        amount: int,
        payee: PartyRef,
        metadata: ReleaseMetadata,
        idempotency_key: str
    ) -> str:
        if not payee.provider_code:
            raise PayeeNotOnboarded(f"User {payee.user_id} has no transfer recipient")

        response = self.client.initiate_transfer(
            amount=amount,
            recipient_code=payee.provider_code,
            reference=idempotency_key,
            currency=metadata.currency.upper(),
            reason=f"{metadata.kind} {metadata.milestone_id} ({escrow_ref})"
        )

        if not response.get("status"):
            if self._is_duplicate(response):
                logger.info(f"Transfer {idempotency_key} already exists, fetching it")
                response = self.client.verify_transfer(idempotency_key)
                if not response.get("status"):
                    raise ProviderError(response.get("message", "Failed to fetch existing transfer"))
            else:
                message = response.get("message", "Transfer failed")
                if "recipient" in message.lower():
                    raise PayeeNotOnboarded(message)
                raise ProviderError(message)

        data = response.get("data") or {}
        if data.get("status") in ("failed", "reversed"):
            raise ProviderError(f"Transfer {idempotency_key} {data.get('status')}")

        transfer_code = data.get("transfer_code")
        if not transfer_code:
            raise ProviderError("Transfer response did not include a transfer code")
        return transfer_code

    def refund_to_brand(
        self,
        escrow_ref: str,
        amount: Optional[int] = None,
        idempotency_key: Optional[str] = None
    ) -> str:
        # Paystack refunds carry no client reference; look for one we already
        # issued before creating another.
        existing = self.client.list_refunds(escrow_ref)
        for refund in existing.get("data") or []:
            if refund.get("status") in ("failed",):
                continue
            if amount is None or refund.get("amount") == amount:
                logger.info(f"Refund for {escrow_ref} already issued ({refund.get('id')})")
                return str(refund.get("id"))

        response = self.client.create_refund(escrow_ref, amount=amount, note=idempotency_key or "")
        if not response.get("status"):
            raise ProviderError(response.get("message", "Refund failed"))

        data = response.get("data") or {}
        refund_id = data.get("id")
        if refund_id is None:
            raise ProviderError("Refund response did not include an id")
        return str(refund_id)

    def get_status(self, escrow_ref: str) -> EscrowStatus:
        response = self.client.verify_transaction(escrow_ref)
        if not response.get("status"):
            if response.get("_http_status") in (400, 404):
                return EscrowStatus.UNFUNDED
            raise ProviderError(response.get("message", "Failed to verify escrow"))

        charge_status = (response.get("data") or {}).get("status")
        if charge_status == "success":
            return EscrowStatus.FUNDED
        if charge_status == "reversed":
            return EscrowStatus.REFUNDED
        return EscrowStatus.UNFUNDED

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def verify_webhook(self, payload: bytes, signature: Optional[str]) -> bool:
        return PaystackWebhookHandler.verify_webhook(payload, signature, self.secret_key)

    def parse_event(self, payload: bytes) -> ProviderEvent:
        return PaystackWebhookHandler.to_provider_event(json.loads(payload))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _is_duplicate(response: Dict[str, Any]) -> bool:
        return "duplicate" in (response.get("message") or "").lower()


# Webhook handler for Paystack events
class PaystackWebhookHandler:
    """Handle Paystack webhook events"""

    SUPPORTED_EVENTS = [
        "charge.success",
        "transfer.success",
        "transfer.failed",
        "transfer.reversed",
    ]

    @staticmethod
    def verify_webhook(payload: bytes, signature: Optional[str], secret_key: str) -> bool:
        """
        Verify webhook signature

        Args:
            payload: Raw request body
            signature: X-Paystack-Signature header value
            secret_key: Paystack secret key

        Returns:
            True if signature is valid
        """
        if not signature or not secret_key:
            return False

        computed_signature = hmac.new(
            secret_key.encode('utf-8'),
            payload,
            hashlib.sha512
        ).hexdigest()

        return hmac.compare_digest(computed_signature, signature)

    @staticmethod
    def event_id(event: Dict[str, Any]) -> str:
        """
        Paystack events carry no event id; the event name plus the id of the
        object it describes is stable across redeliveries.
        """
        data = event.get("data") or {}
        object_id = data.get("id") or data.get("reference") or data.get("transfer_code")
        return f"{event.get('event')}:{object_id}"

    @staticmethod
    def to_provider_event(event: Dict[str, Any]) -> ProviderEvent:
        """Translate a Paystack webhook body into an internal event variant"""
        event_type = event.get("event") or ""
        data = event.get("data") or {}
        event_id = PaystackWebhookHandler.event_id(event)
        reference = data.get("reference") or ""

        if event_type == "charge.success" and reference.startswith(PaystackConfig.ESCROW_PREFIX):
            metadata = data.get("metadata") or {}
            return FundingConfirmed(
                event_id=event_id,
                deal_id=metadata.get("deal_id") or parse_escrow_reference(reference)[1],
                escrow_ref=reference,
                payment_ref=reference,
                amount=int(data.get("amount") or 0)
            )

        if event_type.startswith("transfer.") and reference.startswith(PaystackConfig.RELEASE_PREFIX):
            milestone_id = reference[len(PaystackConfig.RELEASE_PREFIX):]
            payout_ref = data.get("transfer_code") or reference
            if event_type == "transfer.success":
                return PayoutPaid(
                    event_id=event_id,
                    milestone_id=milestone_id,
                    payout_ref=payout_ref,
                    amount=data.get("amount")
                )
            if event_type in ("transfer.failed", "transfer.reversed"):
                return PayoutFailed(
                    event_id=event_id,
                    milestone_id=milestone_id,
                    payout_ref=payout_ref,
                    reason=data.get("reason") or data.get("status"),
                    reversed=event_type == "transfer.reversed"
                )

        return UnhandledEvent(event_id=event_id, provider_type=event_type or "unknown")
