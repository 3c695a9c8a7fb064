# schemas/payment.py
"""
Pydantic schemas for the Pi payment creation and approval API.
"""
from typing import Any, Dict
from pydantic import BaseModel, Field, ConfigDict, field_validator

from services.chain import is_valid_address


class ApprovePaymentRequest(BaseModel):
     """Request body for POST /api/pi/approve-payment."""

     paymentId: str = Field(..., min_length=1, max_length=255, description="Pi payment identifier")
     evmAddress: str = Field(..., description="Address the NFTs will be delivered to")

     model_config = ConfigDict(
          str_strip_whitespace=True,
          json_schema_extra={
               "example": {
                    "paymentId": "pi-payment-abc123",
                    "evmAddress": "0x5B38Da6a701c568545dCfcB03FcB875f56beddC4",
               }
          },
     )

     @field_validator("evmAddress")
     @classmethod
     def _check_address(cls, value: str) -> str:
          if not is_valid_address(value):
               raise ValueError("Invalid EVM address")
          return value


class ApprovePaymentResponse(BaseModel):
     success: bool = True
     message: str = "Pi payment approved"
     piData: Dict[str, Any]


class CreatePaymentRequest(BaseModel):
     """Request body for POST /api/pi/create-payment."""

     evmAddress: str = Field(..., description="Address the NFTs will be delivered to")
     quantity: int = Field(..., ge=1, description="Number of NFTs to pay for")

     model_config = ConfigDict(
          str_strip_whitespace=True,
          json_schema_extra={
               "example": {
                    "evmAddress": "0x5B38Da6a701c568545dCfcB03FcB875f56beddC4",
                    "quantity": 2,
               }
          },
     )

     @field_validator("evmAddress")
     @classmethod
     def _check_address(cls, value: str) -> str:
          if not is_valid_address(value):
               raise ValueError("Invalid EVM address")
          return value


class CreatePaymentResponse(BaseModel):
     success: bool = True
     payment: Dict[str, Any]
