# Sandbox Payments Adapter
# In-memory provider for local development and tests. Holds a ledger per
# escrow, honours idempotency keys the way a real provider does, and signs
# webhook bodies so the reconciler can be exercised end to end.
import hmac
import hashlib
import json
import logging
import threading
from typing import Optional, Dict, Any, List, Callable

from core.payments import (
    PaymentsProvider, PartyRef, FundingResult, EscrowStatus,
    ProviderError, InvalidCurrency, InsufficientFunds, PayerNotOnboarded, PayeeNotOnboarded
)
from schemas.provider_events import ProviderEvent, ReleaseMetadata, parse_provider_event

logger = logging.getLogger(__name__)

SUPPORTED_CURRENCIES = {"KES", "NGN", "GHS", "ZAR", "USD", "EUR", "GBP"}


class SandboxProvider(PaymentsProvider):
    """
    Deterministic provider double.

    Test hooks:
        fail_next(operation, exc)   raise exc on the next call of operation
        confirm_funding_sync        when False, fund_escrow answers confirmed=False
                                    and the test delivers funding.confirmed itself
        on_release                  callable run inside release_to_creator before
                                    the transfer is booked (used to interleave races)
        on_refund                   callable run inside refund_to_brand, same purpose
    """

    name = "sandbox"
    signature_header = "x-sandbox-signature"

    def __init__(self, webhook_secret: str = "sandbox-secret", confirm_funding_sync: bool = True):
        self.webhook_secret = webhook_secret
        self.confirm_funding_sync = confirm_funding_sync
        self.on_release: Optional[Callable[[str, str], None]] = None
        self.on_refund: Optional[Callable[[str], None]] = None

        self.escrows: Dict[str, Dict[str, Any]] = {}
        self.fund_calls: List[Dict[str, Any]] = []
        self.release_calls: List[Dict[str, Any]] = []
        self.refund_calls: List[Dict[str, Any]] = []

        self._idempotent_results: Dict[str, str] = {}
        self._failures: Dict[str, List[Exception]] = {}
        self._lock = threading.RLock()
        self._counter = 0

    # ------------------------------------------------------------------
    # Test controls
    # ------------------------------------------------------------------

    def fail_next(self, operation: str, exc: Optional[Exception] = None):
        """Queue a failure for the next call of operation (e.g. 'release_to_creator')."""
        self._failures.setdefault(operation, []).append(exc or ProviderError(f"Injected {operation} failure"))

    def _maybe_fail(self, operation: str):
        queued = self._failures.get(operation)
        if queued:
            raise queued.pop(0)

    def _next_ref(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}_{self._counter:06d}"

    def sign(self, body: bytes) -> str:
        return hmac.new(self.webhook_secret.encode("utf-8"), body, hashlib.sha256).hexdigest()

    def build_webhook(self, event: Dict[str, Any]):
        """Serialize an event the way the sandbox would deliver it. Returns (body, signature)."""
        body = json.dumps(event, sort_keys=True, separators=(",", ":")).encode("utf-8")
        return body, self.sign(body)

    # ------------------------------------------------------------------
    # Escrow lifecycle
    # ------------------------------------------------------------------

    def create_escrow(self, deal_id: str, currency: str) -> str:
        self._maybe_fail("create_escrow")
        if (currency or "").upper() not in SUPPORTED_CURRENCIES:
            raise InvalidCurrency(f"Currency {currency} is not supported")

        escrow_ref = f"sbx_esc_{deal_id}"
        with self._lock:
            self.escrows.setdefault(escrow_ref, {
                "deal_id": deal_id,
                "currency": currency.upper(),
                "funded": 0,
                "released": 0,
                "refunded": 0,
                "payment_ref": None,
            })
        return escrow_ref

    def fund_escrow(
        self,
        escrow_ref: str,
        amount: int,
        payer: PartyRef,
        idempotency_key: Optional[str] = None
    ) -> FundingResult:
        self._maybe_fail("fund_escrow")
        if not payer.provider_code:
            raise PayerNotOnboarded(f"User {payer.user_id} has no payment method")
        if payer.provider_code == "card_insufficient":
            raise InsufficientFunds("Card declined: insufficient funds")

        with self._lock:
            escrow = self._escrow(escrow_ref)
            key = idempotency_key or f"fund_{escrow_ref}"
            if key in self._idempotent_results:
                return FundingResult(
                    payment_ref=self._idempotent_results[key],
                    confirmed=escrow["funded"] > 0
                )

            payment_ref = self._next_ref("sbx_pay")
            self._idempotent_results[key] = payment_ref
            escrow["payment_ref"] = payment_ref
            self.fund_calls.append({"escrow_ref": escrow_ref, "amount": amount, "payment_ref": payment_ref})
            if self.confirm_funding_sync:
                escrow["funded"] = amount
            else:
                escrow["pending_amount"] = amount

        logger.info(f"Sandbox funding {payment_ref} for {escrow_ref} ({amount})")
        return FundingResult(payment_ref=payment_ref, confirmed=self.confirm_funding_sync)

    def settle_funding(self, escrow_ref: str):
        """Complete an asynchronous funding, as the real provider would before sending funding.confirmed."""
        with self._lock:
            escrow = self._escrow(escrow_ref)
            escrow["funded"] = escrow.pop("pending_amount", escrow["funded"])
            return escrow["payment_ref"]

    def release_to_creator(
        self,
        escrow_ref: str,
        amount: int,
        payee: PartyRef,
        metadata: ReleaseMetadata,
        idempotency_key: str
    ) -> str:
        if self.on_release is not None:
            self.on_release(escrow_ref, idempotency_key)
        self._maybe_fail("release_to_creator")
        if not payee.provider_code:
            raise PayeeNotOnboarded(f"User {payee.user_id} has no payout account")

        with self._lock:
            if idempotency_key in self._idempotent_results:
                return self._idempotent_results[idempotency_key]

            escrow = self._escrow(escrow_ref)
            available = escrow["funded"] - escrow["released"] - escrow["refunded"]
            if amount > available:
                raise ProviderError(f"Escrow {escrow_ref} holds {available}, cannot release {amount}")

            payout_ref = self._next_ref("sbx_tr")
            escrow["released"] += amount
            self._idempotent_results[idempotency_key] = payout_ref
            self.release_calls.append({
                "escrow_ref": escrow_ref,
                "amount": amount,
                "payee": payee.user_id,
                "metadata": metadata.model_dump(),
                "idempotency_key": idempotency_key,
                "payout_ref": payout_ref,
            })

        logger.info(f"Sandbox transfer {payout_ref}: {amount} from {escrow_ref} to {payee.user_id}")
        return payout_ref

    def refund_to_brand(
        self,
        escrow_ref: str,
        amount: Optional[int] = None,
        idempotency_key: Optional[str] = None
    ) -> str:
        if self.on_refund is not None:
            self.on_refund(escrow_ref)
        self._maybe_fail("refund_to_brand")
        with self._lock:
            key = idempotency_key or f"refund_{escrow_ref}"
            if key in self._idempotent_results:
                return self._idempotent_results[key]

            escrow = self._escrow(escrow_ref)
            available = escrow["funded"] - escrow["released"] - escrow["refunded"]
            refund_amount = available if amount is None else amount
            if refund_amount > available:
                raise ProviderError(f"Escrow {escrow_ref} holds {available}, cannot refund {refund_amount}")

            refund_ref = self._next_ref("sbx_re")
            escrow["refunded"] += refund_amount
            self._idempotent_results[key] = refund_ref
            self.refund_calls.append({"escrow_ref": escrow_ref, "amount": refund_amount, "refund_ref": refund_ref})

        return refund_ref

    def get_status(self, escrow_ref: str) -> EscrowStatus:
        self._maybe_fail("get_status")
        escrow = self.escrows.get(escrow_ref)
        if escrow is None or escrow["funded"] == 0:
            return EscrowStatus.UNFUNDED
        if escrow["refunded"] > 0:
            return EscrowStatus.REFUNDED
        if escrow["released"] >= escrow["funded"]:
            return EscrowStatus.RELEASED
        return EscrowStatus.FUNDED

    def _escrow(self, escrow_ref: str) -> Dict[str, Any]:
        escrow = self.escrows.get(escrow_ref)
        if escrow is None:
            raise ProviderError(f"Unknown escrow {escrow_ref}", code="not_found")
        return escrow

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def verify_webhook(self, payload: bytes, signature: Optional[str]) -> bool:
        if not signature:
            return False
        return hmac.compare_digest(self.sign(payload), signature)

    def parse_event(self, payload: bytes) -> ProviderEvent:
        # Sandbox events are already in canonical shape
        return parse_provider_event(json.loads(payload))
