# services/supply_ledger.py
"""
Supply Ledger Service - single source of truth for how many units remain.

Invariant: 0 <= delivered_units <= max_units, remaining = max - delivered.

Every mutation goes through one critical section:
1. take the ledger lock (serialises threads of this process)
2. conditional UPDATE ... WHERE delivered_units + :u <= max_units
   (atomic compare-and-increment, also safe across processes)
3. run the caller's hook in the same transaction (idempotency record)
4. commit before returning, so an Ok survives a crash

A reservation is never rolled back here on its own; the pipeline calls
release() when it knows no asset moved.
"""
import threading
from typing import Callable, Optional

from sqlalchemy import func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from database import get_session_context
from models import SupplyLedgerState
from utils.log import get_logger
from .errors import LedgerPersistenceError, SupplyExhausted

logger = get_logger("supply_ledger")

DEFAULT_LEDGER = "default"

SessionHook = Callable[[Session], None]


class SupplyLedger:
     """Mutex-guarded owner of the persisted supply counter."""

     def __init__(self, session_factory: sessionmaker, max_units: int, name: str = DEFAULT_LEDGER):
          if max_units < 0:
               raise ValueError("max_units must be >= 0")
          self._session_factory = session_factory
          self._lock = threading.Lock()
          self.max_units = max_units
          self.name = name

     # ------------------------------------------------------------------
     # Startup
     # ------------------------------------------------------------------

     def load(self) -> int:
          """
          Load (or create) the persisted ledger row.

          Returns:
               delivered_units as stored

          Raises:
               LedgerPersistenceError: store unreachable, or stored deliveries
               already exceed the configured maximum
          """
          try:
               with self._lock, get_session_context(self._session_factory) as db:
                    state = db.query(SupplyLedgerState).filter(SupplyLedgerState.name == self.name).first()
                    if state is None:
                         state = SupplyLedgerState(name=self.name, max_units=self.max_units, delivered_units=0)
                         db.add(state)
                         db.flush()
                         logger.info("Supply ledger created", extra={"ledger": self.name, "max_units": self.max_units})
                    elif state.max_units != self.max_units:
                         if state.delivered_units > self.max_units:
                              raise LedgerPersistenceError(
                                   f"Ledger {self.name} has {state.delivered_units} delivered, "
                                   f"above configured maximum {self.max_units}"
                              )
                         logger.warning(
                              "Supply maximum changed",
                              extra={"ledger": self.name, "old_max": state.max_units, "new_max": self.max_units},
                         )
                         state.max_units = self.max_units
                    delivered = state.delivered_units
          except SQLAlchemyError as e:
               raise LedgerPersistenceError(f"Could not load supply ledger: {e}") from e

          logger.info(
               "Supply ledger loaded",
               extra={"ledger": self.name, "delivered_units": delivered, "max_units": self.max_units},
          )
          return delivered

     # ------------------------------------------------------------------
     # Reads
     # ------------------------------------------------------------------

     def _state(self, db: Session) -> SupplyLedgerState:
          state = db.query(SupplyLedgerState).filter(SupplyLedgerState.name == self.name).first()
          if state is None:
               raise LedgerPersistenceError(f"Supply ledger {self.name} not initialised; call load() first")
          return state

     def delivered(self) -> int:
          try:
               with get_session_context(self._session_factory) as db:
                    return self._state(db).delivered_units
          except SQLAlchemyError as e:
               raise LedgerPersistenceError(f"Could not read supply ledger: {e}") from e

     def remaining(self) -> int:
          try:
               with get_session_context(self._session_factory) as db:
                    return self._state(db).remaining
          except SQLAlchemyError as e:
               raise LedgerPersistenceError(f"Could not read supply ledger: {e}") from e

     # ------------------------------------------------------------------
     # Mutations
     # ------------------------------------------------------------------

     def reserve_and_commit(self, units: int, claim: Optional[SessionHook] = None) -> int:
          """
          Atomically take `units` from the remaining supply.

          Args:
               units: number of units to reserve (>= 1)
               claim: optional hook run inside the same transaction; if it
                    raises, the increment is rolled back with it

          Returns:
               delivered_units after the reservation

          Raises:
               SupplyExhausted: not enough supply left; nothing changed
               LedgerPersistenceError: the new value could not be persisted
          """
          if units < 1:
               raise ValueError("units must be >= 1")

          try:
               with self._lock, get_session_context(self._session_factory) as db:
                    result = db.execute(
                         update(SupplyLedgerState)
                         .where(SupplyLedgerState.name == self.name)
                         .where(SupplyLedgerState.delivered_units + units <= SupplyLedgerState.max_units)
                         .values(
                              delivered_units=SupplyLedgerState.delivered_units + units,
                              last_updated=func.now(),
                         )
                         .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                         remaining = self._state(db).remaining
                         raise SupplyExhausted(units, remaining)
                    if claim is not None:
                         claim(db)
                    delivered = self._state(db).delivered_units
          except SQLAlchemyError as e:
               raise LedgerPersistenceError(f"Could not persist supply reservation: {e}") from e

          logger.info(
               "Supply reserved",
               extra={"ledger": self.name, "units": units, "delivered_units": delivered},
          )
          return delivered

     def locked_transaction(self, hook: SessionHook) -> None:
          """Run hook in its own transaction under the ledger lock, counter untouched."""
          try:
               with self._lock, get_session_context(self._session_factory) as db:
                    hook(db)
          except SQLAlchemyError as e:
               raise LedgerPersistenceError(f"Could not persist delivery state: {e}") from e

     def release(self, units: int, settle: Optional[SessionHook] = None) -> int:
          """
          Compensating decrement for a reservation whose transfer never moved.

          Returns:
               delivered_units after the release
          """
          if units < 1:
               raise ValueError("units must be >= 1")

          try:
               with self._lock, get_session_context(self._session_factory) as db:
                    result = db.execute(
                         update(SupplyLedgerState)
                         .where(SupplyLedgerState.name == self.name)
                         .where(SupplyLedgerState.delivered_units >= units)
                         .values(
                              delivered_units=SupplyLedgerState.delivered_units - units,
                              last_updated=func.now(),
                         )
                         .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                         raise LedgerPersistenceError(
                              f"Cannot release {units} unit(s) from ledger {self.name}: fewer are delivered"
                         )
                    if settle is not None:
                         settle(db)
                    delivered = self._state(db).delivered_units
          except SQLAlchemyError as e:
               raise LedgerPersistenceError(f"Could not persist supply release: {e}") from e

          logger.info(
               "Supply released",
               extra={"ledger": self.name, "units": units, "delivered_units": delivered},
          )
          return delivered
