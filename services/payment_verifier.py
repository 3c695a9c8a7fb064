# services/payment_verifier.py
"""
Payment verification against the Pi Network payments API.

The processor is the only authority on payment status, so every
verification fetches the record fresh: nothing here is cached and nothing
is retried. Retrying a lookup is always safe, but that decision belongs to
the caller.

Validation is a pure function of the fetched record and reports exactly
which clause failed (status, payee, amount).
"""
import enum
import json
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Tuple

import requests

from utils.log import get_logger
from .errors import MalformedResponse, PaymentRejected, UpstreamUnavailable

logger = get_logger("payment_verifier")


class PaymentStatus(str, enum.Enum):
     PENDING = "PENDING"
     COMPLETED = "COMPLETED"
     CANCELLED = "CANCELLED"
     UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class PaymentRecord:
     reference: str
     status: PaymentStatus
     payer_account: Optional[str]
     payee_account: Optional[str]
     amount: Decimal


def parse_status(raw: Any) -> PaymentStatus:
     """
     Map the processor's status field onto PaymentStatus.

     Accepts a plain string ("completed", "pending", ...) or the Pi v2 flag
     object ({"transaction_verified": true, "cancelled": false, ...}).
     """
     if isinstance(raw, str):
          value = raw.strip().lower()
          if value == "completed":
               return PaymentStatus.COMPLETED
          if value == "pending":
               return PaymentStatus.PENDING
          if value in ("cancelled", "canceled"):
               return PaymentStatus.CANCELLED
          return PaymentStatus.UNKNOWN

     if isinstance(raw, dict):
          if raw.get("cancelled") or raw.get("user_cancelled"):
               return PaymentStatus.CANCELLED
          if raw.get("transaction_verified") is True:
               return PaymentStatus.COMPLETED
          return PaymentStatus.PENDING

     return PaymentStatus.UNKNOWN


def _parse_amount(raw: Any, payload: str) -> Decimal:
     if isinstance(raw, bool) or raw is None:
          raise MalformedResponse("Payment amount missing or not numeric", payload=payload)
     try:
          amount = Decimal(str(raw))
     except InvalidOperation:
          raise MalformedResponse(f"Payment amount {raw!r} is not a decimal", payload=payload)
     if not amount.is_finite() or amount < 0:
          raise MalformedResponse(f"Payment amount {raw!r} is not a valid amount", payload=payload)
     return amount


def parse_payment_record(data: Any, reference: str, payload: str = "") -> PaymentRecord:
     """Interpret a decoded processor response as a PaymentRecord."""
     if not isinstance(data, dict):
          raise MalformedResponse("Expected a JSON object for the payment", payload=payload)

     identifier = data.get("identifier")
     if identifier is not None and str(identifier) != reference:
          raise MalformedResponse(
               f"Processor returned payment {identifier!r} for reference {reference!r}",
               payload=payload,
          )

     if "status" not in data:
          raise MalformedResponse("Payment status missing", payload=payload)

     payee = data.get("to_address", data.get("to"))
     payer = data.get("from_address", data.get("from"))

     return PaymentRecord(
          reference=reference,
          status=parse_status(data["status"]),
          payer_account=str(payer) if payer is not None else None,
          payee_account=str(payee) if payee is not None else None,
          amount=_parse_amount(data.get("amount"), payload),
     )


def validate_payment(record: PaymentRecord, expected_payee: str, min_amount: Decimal) -> PaymentRecord:
     """
     Accept the record only if it is completed, paid to expected_payee and
     for at least min_amount.

     Raises:
          PaymentRejected: with rejection set to the first failing clause
     """
     if record.status != PaymentStatus.COMPLETED:
          raise PaymentRejected(
               PaymentRejected.STATUS,
               f"Payment {record.reference} is {record.status.value}, not COMPLETED",
          )
     if record.payee_account != expected_payee:
          raise PaymentRejected(
               PaymentRejected.PAYEE_MISMATCH,
               f"Payment {record.reference} was not sent to the expected account",
          )
     if record.amount < min_amount:
          raise PaymentRejected(
               PaymentRejected.INSUFFICIENT_AMOUNT,
               f"Payment {record.reference} amount {record.amount} is below {min_amount}",
          )
     return record


class PiPaymentsClient:
     """Thin HTTP client for the Pi payments API (server-side key auth)."""

     def __init__(
          self,
          payments_url: str,
          api_key: str,
          timeout: float = 10.0,
          session: Optional[requests.Session] = None,
     ):
          self.payments_url = payments_url.rstrip("/")
          self.api_key = api_key
          self.timeout = timeout
          self.session = session or requests.Session()

     def _headers(self) -> dict:
          return {
               "Authorization": f"Key {self.api_key}",
               "Content-Type": "application/json",
          }

     def _request(self, method: str, url: str, **kwargs) -> Tuple[Any, str]:
          """Returns the decoded JSON body together with the raw text."""
          try:
               response = self.session.request(
                    method, url, headers=self._headers(), timeout=self.timeout, **kwargs
               )
          except requests.RequestException as e:
               raise UpstreamUnavailable(f"Pi API unreachable: {e}")

          body = response.text
          if not 200 <= response.status_code < 300:
               logger.error(
                    "Pi API error",
                    extra={"status": response.status_code, "url": url, "error_text": body},
               )
               raise UpstreamUnavailable(
                    f"Pi API returned HTTP {response.status_code}",
                    status_code=response.status_code,
                    payload=body,
               )

          try:
               return json.loads(body), body
          except ValueError:
               raise MalformedResponse("Could not parse Pi payment response", payload=body)

     def get_payment(self, reference: str) -> PaymentRecord:
          data, body = self._request("GET", f"{self.payments_url}/{reference}")
          return parse_payment_record(data, reference, payload=body)

     def create_payment(self, amount: Decimal, memo: str, metadata: dict, recipient_uid: str) -> dict:
          """
          Create an app-to-user payment request on the Pi API.

          Returns:
               the PaymentDTO the processor created
          """
          payment = {
               "amount": str(amount),
               "memo": memo,
               "metadata": metadata,
               "to_user_uid": recipient_uid,
          }
          data, body = self._request("POST", self.payments_url, json=payment)
          if not isinstance(data, dict):
               raise MalformedResponse("Expected a JSON object for the created payment", payload=body)
          logger.info(
               "Pi payment created",
               extra={"payment_reference": data.get("identifier") or data.get("id"), "amount": str(amount)},
          )
          return data

     def approve_payment(self, reference: str) -> dict:
          """Server-side approval step of the Pi payment flow."""
          data, _ = self._request("POST", f"{self.payments_url}/{reference}/approve", json={})
          logger.info("Pi payment approved", extra={"payment_reference": reference})
          return data


class PaymentVerifier:
     """Fetches a payment fresh from the processor and validates its terms."""

     def __init__(self, client: PiPaymentsClient):
          self.client = client

     def verify(self, reference: str, expected_payee: str, min_amount: Decimal) -> PaymentRecord:
          if not reference or not reference.strip():
               raise ValueError("reference must be non-empty")
          if not expected_payee or not expected_payee.strip():
               raise ValueError("expected_payee must be a non-empty account identifier")
          if min_amount <= 0:
               raise ValueError("min_amount must be positive")

          record = self.client.get_payment(reference)
          try:
               return validate_payment(record, expected_payee, min_amount)
          except PaymentRejected as e:
               logger.warning(
                    "Payment validation failed",
                    extra={
                         "payment_reference": reference,
                         "rejection": e.rejection,
                         "status": record.status.value,
                         "amount": str(record.amount),
                    },
               )
               raise
