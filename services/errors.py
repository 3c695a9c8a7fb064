# services/errors.py
"""
Error taxonomy for the payment-gated delivery pipeline.

Everything raised before DELIVERING is clean (nothing to undo). During
DELIVERING, SubmissionFailed means no asset moved, while ConfirmationTimeout
is ambiguous: the transfer may still land.
"""
from typing import Optional


class DeliveryError(Exception):
     """Base class for every pipeline failure."""

     reason = "error"


# ---------------------------------------------------------------------------
# Payment verification
# ---------------------------------------------------------------------------

class VerificationError(DeliveryError):
     reason = "verification_failed"


class UpstreamUnavailable(VerificationError):
     """Transport error or non-2xx answer from the payment processor."""

     reason = "upstream_unavailable"

     def __init__(self, message: str, status_code: Optional[int] = None, payload: Optional[str] = None):
          super().__init__(message)
          self.status_code = status_code
          self.payload = payload


class MalformedResponse(VerificationError):
     """Processor answered but the body is not a payment record."""

     reason = "malformed_response"

     def __init__(self, message: str, payload: Optional[str] = None):
          super().__init__(message)
          self.payload = payload


class PaymentRejected(VerificationError):
     """
     The payment exists but does not satisfy the expected terms.

     rejection is one of "status", "payee_mismatch", "insufficient_amount".
     """

     reason = "payment_rejected"

     STATUS = "status"
     PAYEE_MISMATCH = "payee_mismatch"
     INSUFFICIENT_AMOUNT = "insufficient_amount"

     def __init__(self, rejection: str, message: str):
          super().__init__(message)
          self.rejection = rejection


# ---------------------------------------------------------------------------
# Supply, cap and chain reads
# ---------------------------------------------------------------------------

class SupplyExhausted(DeliveryError):
     reason = "supply_exhausted"

     def __init__(self, requested: int, remaining: int):
          super().__init__(f"Requested {requested} unit(s) but only {remaining} remain")
          self.requested = requested
          self.remaining = remaining


class CapExceeded(DeliveryError):
     reason = "cap_exceeded"

     def __init__(self, current: int, cap: int, requested: int = 0):
          super().__init__(
               f"Wallet NFT cap exceeded (max {cap} per wallet). You currently own {current}."
          )
          self.current = current
          self.cap = cap
          self.requested = requested


class LedgerQueryError(DeliveryError):
     """The chain could not be asked how many units a recipient holds."""

     reason = "holding_unavailable"


class LedgerPersistenceError(DeliveryError):
     """The supply ledger cannot be loaded or persisted. Fatal at startup."""

     reason = "ledger_unavailable"


class DuplicateDelivery(DeliveryError):
     """A payment reference already has a live delivery claim."""

     reason = "duplicate_delivery"

     def __init__(self, payment_reference: str, status: str):
          super().__init__(f"Payment {payment_reference} already claimed ({status})")
          self.payment_reference = payment_reference
          self.status = status


# ---------------------------------------------------------------------------
# Transfer execution
# ---------------------------------------------------------------------------

class TransferError(DeliveryError):
     reason = "transfer_failed"

     def __init__(self, message: str, transfer_id: Optional[str] = None):
          super().__init__(message)
          self.transfer_id = transfer_id


class SubmissionFailed(TransferError):
     """Nothing moved on chain; safe to retry."""

     reason = "delivery_failed"


class TransferReverted(SubmissionFailed):
     """Mined but reverted: the nonce is spent, the asset is not."""


class ConfirmationTimeout(TransferError):
     """Submitted (or possibly submitted) but not observed as confirmed."""

     reason = "confirmation_timeout"
