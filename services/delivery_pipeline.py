# services/delivery_pipeline.py
"""
Delivery Pipeline - verify payment, check supply and cap, transfer once.

States per request:

     RECEIVED -> VERIFYING -> SUPPLY_CHECKING -> CAP_CHECKING -> DELIVERING
          -> COMMITTED | REJECTED | UNCERTAIN

Everything before DELIVERING is side-effect free. Entering DELIVERING
reserves supply and claims the payment reference in one locked
transaction. From there:
- SubmissionFailed: the reservation is released, the claim marked FAILED
- ConfirmationTimeout: the reservation stands, the claim is UNCERTAIN
  until reconcile() sees the receipt
- confirmed: the claim is COMMITTED with the transaction hash

The payment reference is the idempotency key. A reference that already
reached COMMITTED returns the recorded outcome without re-verifying and
without a second transfer.

A DELIVERING claim that has made no progress for longer than
claim_timeout belongs to a worker that is gone. With a transaction hash
it is reconciled like UNCERTAIN; without one it is parked as UNCERTAIN
for an operator, keeping its reservation.
"""
import enum
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from database import get_session_context
from models import DeliveryRecord, DeliveryStatus
from utils.log import get_logger
from .cap_checker import CapChecker
from .delivery_executor import DeliveryExecutor
from .errors import (
     CapExceeded,
     ConfirmationTimeout,
     DuplicateDelivery,
     LedgerQueryError,
     PaymentRejected,
     SubmissionFailed,
     SupplyExhausted,
     UpstreamUnavailable,
     VerificationError,
)
from .payment_verifier import PaymentVerifier
from .supply_ledger import SupplyLedger

logger = get_logger("pipeline")

DELIVERY_FAILED = "delivery_failed"
DELIVERY_IN_PROGRESS = "delivery_in_progress"

# claim states a receipt may still settle
OPEN_STATUSES = (DeliveryStatus.DELIVERING, DeliveryStatus.UNCERTAIN)


def _utcnow() -> datetime:
     return datetime.now(timezone.utc).replace(tzinfo=None)


class PipelineState(str, enum.Enum):
     RECEIVED = "RECEIVED"
     VERIFYING = "VERIFYING"
     SUPPLY_CHECKING = "SUPPLY_CHECKING"
     CAP_CHECKING = "CAP_CHECKING"
     DELIVERING = "DELIVERING"
     COMMITTED = "COMMITTED"
     REJECTED = "REJECTED"
     UNCERTAIN = "UNCERTAIN"


@dataclass(frozen=True)
class DeliveryRequest:
     payment_reference: str
     recipient: str
     units: int


@dataclass(frozen=True)
class DeliveryOutcome:
     payment_reference: str
     state: PipelineState
     reason: Optional[str] = None
     message: str = ""
     transfer_id: Optional[str] = None
     units: int = 0
     holding: Optional[int] = None
     detail: Dict[str, Any] = field(default_factory=dict)
     replayed: bool = False

     @property
     def committed(self) -> bool:
          return self.state == PipelineState.COMMITTED

     @property
     def uncertain(self) -> bool:
          return self.state == PipelineState.UNCERTAIN

     @property
     def rejected(self) -> bool:
          return self.state == PipelineState.REJECTED


def _rejected(reference: str, reason: str, message: str, **detail) -> DeliveryOutcome:
     return DeliveryOutcome(
          payment_reference=reference,
          state=PipelineState.REJECTED,
          reason=reason,
          message=message,
          transfer_id=detail.pop("transfer_id", None),
          detail=detail,
     )


def _uncertain(reference: str, transfer_id: Optional[str], units: int, replayed: bool = False) -> DeliveryOutcome:
     return DeliveryOutcome(
          payment_reference=reference,
          state=PipelineState.UNCERTAIN,
          reason="confirmation_timeout",
          message="Transfer submitted but not confirmed yet; check again with the same payment reference",
          transfer_id=transfer_id,
          units=units,
          replayed=replayed,
     )


def _committed(reference: str, transfer_id: str, units: int, holding: Optional[int], replayed: bool = False) -> DeliveryOutcome:
     return DeliveryOutcome(
          payment_reference=reference,
          state=PipelineState.COMMITTED,
          message=f"{units} NFT(s) delivered!",
          transfer_id=transfer_id,
          units=units,
          holding=holding,
          replayed=replayed,
     )


def outcome_from_record(record: DeliveryRecord) -> DeliveryOutcome:
     """Translate a persisted claim into the outcome a repeat request receives."""
     reference = record.payment_reference
     if record.status == DeliveryStatus.COMMITTED:
          return _committed(reference, record.transfer_id, record.units, record.holding_after, replayed=True)
     if record.status == DeliveryStatus.UNCERTAIN:
          return _uncertain(reference, record.transfer_id, record.units, replayed=True)
     if record.status == DeliveryStatus.FAILED:
          return _rejected(reference, DELIVERY_FAILED, "Blockchain transaction failed", transfer_id=record.transfer_id)
     return _rejected(reference, DELIVERY_IN_PROGRESS, "A delivery for this payment is already in progress")


class DeliveryPipeline:
     """Orchestrates one delivery per payment reference."""

     def __init__(
          self,
          verifier: PaymentVerifier,
          ledger: SupplyLedger,
          cap_checker: CapChecker,
          executor: DeliveryExecutor,
          session_factory: sessionmaker,
          *,
          expected_payee: str,
          unit_price: Decimal,
          sender: str,
          asset_id: int,
          max_units_per_request: int,
          claim_timeout: float = 180.0,
     ):
          self.verifier = verifier
          self.ledger = ledger
          self.cap_checker = cap_checker
          self.executor = executor
          self._session_factory = session_factory
          self.expected_payee = expected_payee
          self.unit_price = unit_price
          self.sender = sender
          self.asset_id = asset_id
          self.max_units_per_request = max_units_per_request
          self.claim_timeout = timedelta(seconds=claim_timeout)

     # ------------------------------------------------------------------
     # Record helpers
     # ------------------------------------------------------------------

     def _load_record(self, reference: str) -> Optional[DeliveryRecord]:
          with get_session_context(self._session_factory) as db:
               return (
                    db.query(DeliveryRecord)
                    .filter(DeliveryRecord.payment_reference == reference)
                    .first()
               )

     @staticmethod
     def _locked_record(db: Session, reference: str) -> DeliveryRecord:
          record = db.query(DeliveryRecord).filter(DeliveryRecord.payment_reference == reference).first()
          if record is None:
               raise LookupError(f"No delivery record for payment {reference}")
          return record

     def _claim(self, request: DeliveryRequest, db: Session) -> None:
          """Runs inside the reservation transaction."""
          record = (
               db.query(DeliveryRecord)
               .filter(DeliveryRecord.payment_reference == request.payment_reference)
               .first()
          )
          if record is None:
               db.add(DeliveryRecord(
                    payment_reference=request.payment_reference,
                    recipient=request.recipient,
                    units=request.units,
                    status=DeliveryStatus.DELIVERING,
                    claimed_at=_utcnow(),
               ))
               try:
                    db.flush()
               except IntegrityError:
                    raise DuplicateDelivery(request.payment_reference, DeliveryStatus.DELIVERING.value)
               return

          if record.status != DeliveryStatus.FAILED:
               raise DuplicateDelivery(request.payment_reference, record.status.value)

          # a failed attempt moved nothing; the payment may be delivered again
          record.status = DeliveryStatus.DELIVERING
          record.recipient = request.recipient
          record.units = request.units
          record.transfer_id = None
          record.holding_after = None
          record.claimed_at = _utcnow()
          record.submitted_at = None

     def _set_transfer_id(self, reference: str, transfer_id: str) -> None:
          def hook(db: Session) -> None:
               record = self._locked_record(db, reference)
               record.transfer_id = transfer_id
               record.submitted_at = _utcnow()
          self.ledger.locked_transaction(hook)

     def _mark_committed(self, reference: str, transfer_id: str, holding: Optional[int]) -> None:
          def hook(db: Session) -> None:
               self._locked_record(db, reference).mark_committed(transfer_id, holding)
          self.ledger.locked_transaction(hook)

     def _mark_uncertain(self, reference: str, transfer_id: Optional[str]) -> None:
          def hook(db: Session) -> None:
               record = self._locked_record(db, reference)
               if record.status in OPEN_STATUSES:
                    record.mark_uncertain(transfer_id)
          self.ledger.locked_transaction(hook)

     def _release_open_claim(self, reference: str, units: int) -> bool:
          """
          Give back the reservation of a claim and mark it FAILED.

          Returns False (nothing released) if the claim was already settled
          by another thread.
          """
          def settle(db: Session) -> None:
               locked = self._locked_record(db, reference)
               if locked.status not in OPEN_STATUSES:
                    raise DuplicateDelivery(reference, locked.status.value)
               locked.mark_failed()

          try:
               self.ledger.release(units, settle=settle)
          except DuplicateDelivery as e:
               logger.info("Delivery already settled", extra={"payment_reference": reference, "status": e.status})
               return False
          return True

     def _replay(self, reference: str) -> Optional[DeliveryOutcome]:
          record = self._load_record(reference)
          if record is None or record.status == DeliveryStatus.FAILED:
               return None
          if record.status in OPEN_STATUSES:
               return self.reconcile(reference)
          return outcome_from_record(record)

     # ------------------------------------------------------------------
     # Pipeline
     # ------------------------------------------------------------------

     def _enter(self, state: PipelineState, request: DeliveryRequest) -> None:
          logger.debug(
               "Pipeline state",
               extra={"payment_reference": request.payment_reference, "state": state.value},
          )

     def deliver(self, request: DeliveryRequest) -> DeliveryOutcome:
          """
          Run the full pipeline for one request.

          Returns:
               DeliveryOutcome in state COMMITTED, REJECTED or UNCERTAIN

          Raises:
               ValueError: malformed request (empty reference, units out of range)
               LedgerPersistenceError: supply ledger unreadable or unwritable
          """
          reference = request.payment_reference
          units = request.units
          if not reference or not reference.strip():
               raise ValueError("payment_reference must be non-empty")
          if not 1 <= units <= self.max_units_per_request:
               raise ValueError(f"units must be between 1 and {self.max_units_per_request}")

          self._enter(PipelineState.RECEIVED, request)
          replay = self._replay(reference)
          if replay is not None:
               logger.info(
                    "Payment already handled",
                    extra={"payment_reference": reference, "state": replay.state.value},
               )
               return replay

          self._enter(PipelineState.VERIFYING, request)
          try:
               self.verifier.verify(reference, self.expected_payee, self.unit_price * units)
          except PaymentRejected as e:
               return _rejected(reference, e.reason, "Payment validation failed", rejection=e.rejection)
          except UpstreamUnavailable as e:
               return _rejected(reference, e.reason, "Invalid Pi payment", status_code=e.status_code, upstream=e.payload)
          except VerificationError as e:
               return _rejected(reference, e.reason, "Could not parse Pi payment response")

          self._enter(PipelineState.SUPPLY_CHECKING, request)
          remaining = self.ledger.remaining()
          if remaining < units:
               logger.warning(
                    "Supply exhausted",
                    extra={"payment_reference": reference, "units": units, "remaining": remaining},
               )
               return _rejected(reference, SupplyExhausted.reason, "Not enough NFTs left", remaining=remaining)

          self._enter(PipelineState.CAP_CHECKING, request)
          try:
               current = self.cap_checker.enforce(request.recipient, self.asset_id, units)
          except CapExceeded as e:
               return _rejected(reference, e.reason, str(e), current=e.current, cap=e.cap)
          except LedgerQueryError as e:
               return _rejected(reference, e.reason, "Could not fetch wallet NFT balance")

          try:
               self.ledger.reserve_and_commit(units, claim=lambda db: self._claim(request, db))
          except SupplyExhausted as e:
               logger.warning(
                    "Supply exhausted at reservation",
                    extra={"payment_reference": reference, "units": units, "remaining": e.remaining},
               )
               return _rejected(reference, e.reason, "Not enough NFTs left", remaining=e.remaining)
          except DuplicateDelivery as e:
               logger.info("Duplicate delivery claim", extra={"payment_reference": reference, "status": e.status})
               replay = self._replay(reference)
               if replay is not None:
                    return replay
               return _rejected(reference, DELIVERY_IN_PROGRESS, "A delivery for this payment is already in progress")

          self._enter(PipelineState.DELIVERING, request)
          return self._execute(request, current)

     def _execute(self, request: DeliveryRequest, current: int) -> DeliveryOutcome:
          reference = request.payment_reference
          units = request.units
          submitted: Dict[str, str] = {}

          def on_submitted(transfer_id: str) -> None:
               submitted["transfer_id"] = transfer_id
               self._set_transfer_id(reference, transfer_id)

          try:
               receipt = self.executor.transfer(
                    self.sender, request.recipient, self.asset_id, units, on_submitted=on_submitted
               )
          except SubmissionFailed as e:
               logger.error(
                    "Blockchain Transaction Error",
                    extra={"payment_reference": reference, "error": str(e), "transfer_id": e.transfer_id},
               )

               self._release_open_claim(reference, units)
               return _rejected(reference, DELIVERY_FAILED, "Blockchain transaction failed", transfer_id=e.transfer_id)
          except ConfirmationTimeout as e:
               transfer_id = e.transfer_id or submitted.get("transfer_id")
               logger.error(
                    "Transfer confirmation timed out",
                    extra={"payment_reference": reference, "transfer_id": transfer_id},
               )
               self._mark_uncertain(reference, transfer_id)
               return _uncertain(reference, transfer_id, units)
          except Exception:
               logger.exception("Unexpected error during delivery", extra={"payment_reference": reference})
               self._mark_uncertain(reference, submitted.get("transfer_id"))
               raise

          holding = current + units
          self._mark_committed(reference, receipt.transfer_id, holding)
          logger.info(
               "NFT(s) delivered",
               extra={
                    "payment_reference": reference,
                    "transfer_id": receipt.transfer_id,
                    "recipient": request.recipient,
                    "units": units,
               },
          )
          return _committed(reference, receipt.transfer_id, units, holding)

     # ------------------------------------------------------------------
     # Re-checks
     # ------------------------------------------------------------------

     def _park_uncertain(self, reference: str) -> None:
          """Move a stale DELIVERING claim to UNCERTAIN; its reservation stands."""
          def hook(db: Session) -> None:
               locked = self._locked_record(db, reference)
               if locked.status == DeliveryStatus.DELIVERING and locked.is_stale(_utcnow(), self.claim_timeout):
                    locked.mark_uncertain()
          self.ledger.locked_transaction(hook)
          logger.warning("Stale delivery claim moved to UNCERTAIN", extra={"payment_reference": reference})

     def reconcile(self, reference: str) -> Optional[DeliveryOutcome]:
          """
          Resolve an open delivery by looking its transaction up on chain.

          UNCERTAIN claims are always looked up. DELIVERING claims are left
          to their worker until they go stale (no progress for longer than
          claim_timeout).

          Returns:
               None if the reference was never claimed, otherwise the
               (possibly updated) recorded outcome
          """
          record = self._load_record(reference)
          if record is None:
               return None
          if record.status not in OPEN_STATUSES:
               return outcome_from_record(record)

          if record.status == DeliveryStatus.DELIVERING:
               if not record.is_stale(_utcnow(), self.claim_timeout):
                    return outcome_from_record(record)
               if not record.transfer_id:
                    self._park_uncertain(reference)
                    return outcome_from_record(self._load_record(reference))
          elif not record.transfer_id:
               return outcome_from_record(record)

          found = self.executor.lookup(record.transfer_id)
          if found is None:
               if record.status == DeliveryStatus.DELIVERING:
                    self._park_uncertain(reference)
                    return outcome_from_record(self._load_record(reference))
               return outcome_from_record(record)

          if found.confirmed:
               try:
                    holding = self.cap_checker.current_holding(record.recipient, self.asset_id)
               except LedgerQueryError:
                    holding = None

               def confirm(db: Session) -> None:
                    locked = self._locked_record(db, reference)
                    if locked.status in OPEN_STATUSES:
                         locked.mark_committed(found.transfer_id, holding)

               self.ledger.locked_transaction(confirm)
               logger.info(
                    "Open delivery confirmed on chain",
                    extra={"payment_reference": reference, "transfer_id": found.transfer_id},
               )
          elif self._release_open_claim(reference, record.units):
               logger.warning(
                    "Open delivery reverted; supply released",
                    extra={"payment_reference": reference, "transfer_id": found.transfer_id},
               )

          return outcome_from_record(self._load_record(reference))

     def status(self, reference: str) -> Optional[DeliveryOutcome]:
          """Recorded outcome for reference (re-checking open claims), or None."""
          return self.reconcile(reference)
