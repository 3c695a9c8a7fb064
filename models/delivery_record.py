# models/delivery_record.py
"""
DeliveryRecord model - one row per payment reference that reached delivery.

The payment reference is the idempotency key of the whole pipeline: the
unique index guarantees a single payment can never be claimed by two
transfers, and the recorded outcome is what repeated requests get back.
"""
import enum
from datetime import datetime, timedelta

from sqlalchemy import Column, DateTime, Integer, String, Enum
from .base import Base, TimestampMixin


class DeliveryStatus(str, enum.Enum):
     """Lifecycle of a delivery claim."""
     DELIVERING = "DELIVERING"
     COMMITTED = "COMMITTED"
     UNCERTAIN = "UNCERTAIN"
     FAILED = "FAILED"


class DeliveryRecord(TimestampMixin, Base):
     __tablename__ = "delivery_records"

     id = Column(Integer, primary_key=True, autoincrement=True)
     payment_reference = Column(String(255), nullable=False, unique=True, index=True)
     recipient = Column(String(64), nullable=False, index=True)
     units = Column(Integer, nullable=False)
     status = Column(
          Enum(DeliveryStatus, name="delivery_status", create_constraint=True),
          default=DeliveryStatus.DELIVERING,
          nullable=False,
          index=True
     )
     transfer_id = Column(String(80), nullable=True)  # 0x-prefixed transaction hash
     holding_after = Column(Integer, nullable=True)
     # naive UTC, written by the service; staleness of a DELIVERING claim
     claimed_at = Column(DateTime, nullable=True)
     submitted_at = Column(DateTime, nullable=True)

     def __repr__(self):
          return (
               f"<DeliveryRecord(reference='{self.payment_reference}', "
               f"status='{self.status.value}', transfer_id={self.transfer_id})>"
          )

     def is_stale(self, now: datetime, timeout: timedelta) -> bool:
          """No progress on this claim (claim or submission) for longer than timeout."""
          last = self.submitted_at or self.claimed_at
          return last is None or now - last > timeout

     def mark_committed(self, transfer_id: str, holding_after: int) -> None:
          self.status = DeliveryStatus.COMMITTED
          self.transfer_id = transfer_id
          self.holding_after = holding_after

     def mark_uncertain(self, transfer_id=None) -> None:
          self.status = DeliveryStatus.UNCERTAIN
          if transfer_id:
               self.transfer_id = transfer_id

     def mark_failed(self) -> None:
          self.status = DeliveryStatus.FAILED
