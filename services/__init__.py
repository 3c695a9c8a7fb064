# services/__init__.py
from .errors import (
     DeliveryError,
     VerificationError,
     UpstreamUnavailable,
     MalformedResponse,
     PaymentRejected,
     SupplyExhausted,
     CapExceeded,
     LedgerQueryError,
     LedgerPersistenceError,
     TransferError,
     SubmissionFailed,
     TransferReverted,
     ConfirmationTimeout,
)
from .payment_verifier import PaymentRecord, PaymentStatus, PaymentVerifier, PiPaymentsClient
from .supply_ledger import SupplyLedger
from .cap_checker import CapChecker
from .chain import ChainClient
from .delivery_executor import DeliveryExecutor, TransferReceipt
from .delivery_pipeline import DeliveryOutcome, DeliveryPipeline, DeliveryRequest, PipelineState

__all__ = [
     "DeliveryError",
     "VerificationError",
     "UpstreamUnavailable",
     "MalformedResponse",
     "PaymentRejected",
     "SupplyExhausted",
     "CapExceeded",
     "LedgerQueryError",
     "LedgerPersistenceError",
     "TransferError",
     "SubmissionFailed",
     "TransferReverted",
     "ConfirmationTimeout",
     "PaymentRecord",
     "PaymentStatus",
     "PaymentVerifier",
     "PiPaymentsClient",
     "SupplyLedger",
     "CapChecker",
     "ChainClient",
     "DeliveryExecutor",
     "TransferReceipt",
     "DeliveryOutcome",
     "DeliveryPipeline",
     "DeliveryRequest",
     "PipelineState",
]
