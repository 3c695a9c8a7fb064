# models/supply_ledger.py
"""
SupplyLedgerState model - durable counter of units already delivered.

One row per collection (normally just "default"). delivered_units is only
changed through the conditional UPDATE in services/supply_ledger.py, and the
check constraint keeps 0 <= delivered_units <= max_units even if a bad
statement slips through.
"""
from sqlalchemy import CheckConstraint, Column, DateTime, Integer, String, func
from .base import Base


class SupplyLedgerState(Base):
     __tablename__ = "supply_ledger"
     __table_args__ = (
          CheckConstraint(
               "delivered_units >= 0 AND delivered_units <= max_units",
               name="ck_supply_ledger_bounds",
          ),
     )

     id = Column(Integer, primary_key=True, autoincrement=True)
     name = Column(String(64), nullable=False, unique=True, index=True)
     max_units = Column(Integer, nullable=False)
     delivered_units = Column(Integer, nullable=False, default=0)
     last_updated = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)

     @property
     def remaining(self) -> int:
          return max(0, self.max_units - self.delivered_units)

     def __repr__(self):
          return f"<SupplyLedgerState(name='{self.name}', delivered={self.delivered_units}/{self.max_units})>"
