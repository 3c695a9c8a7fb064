# schemas/__init__.py
from .auth import VerifyUserRequest, VerifyUserResponse
from .delivery import (
     DeliverRequest,
     DeliverResponse,
     DeliveryErrorResponse,
     SupplyResponse,
)
from .payment import (
     ApprovePaymentRequest,
     ApprovePaymentResponse,
     CreatePaymentRequest,
     CreatePaymentResponse,
)

__all__ = [
     "VerifyUserRequest",
     "VerifyUserResponse",
     "DeliverRequest",
     "DeliverResponse",
     "DeliveryErrorResponse",
     "SupplyResponse",
     "ApprovePaymentRequest",
     "ApprovePaymentResponse",
     "CreatePaymentRequest",
     "CreatePaymentResponse",
]
