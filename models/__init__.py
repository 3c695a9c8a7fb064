# models/__init__.py
from .base import Base
from .supply_ledger import SupplyLedgerState
from .delivery_record import DeliveryRecord, DeliveryStatus

__all__ = [
     "Base",
     "SupplyLedgerState",
     "DeliveryRecord",
     "DeliveryStatus",
]
