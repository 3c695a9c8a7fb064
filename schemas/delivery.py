# schemas/delivery.py
"""
Pydantic schemas for the verify-and-deliver API.
"""
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator

from services.chain import is_valid_address


class DeliverRequest(BaseModel):
     """Request body for POST /api/verify-and-deliver."""

     paymentId: str = Field(..., min_length=1, max_length=255, description="Pi payment identifier")
     recipientEvmAddress: str = Field(..., description="Polygon address that receives the NFTs")
     quantity: int = Field(..., ge=1, description="Number of NFTs paid for")

     model_config = ConfigDict(
          str_strip_whitespace=True,
          json_schema_extra={
               "example": {
                    "paymentId": "pi-payment-abc123",
                    "recipientEvmAddress": "0x5B38Da6a701c568545dCfcB03FcB875f56beddC4",
                    "quantity": 2,
               }
          },
     )

     @field_validator("recipientEvmAddress")
     @classmethod
     def _check_address(cls, value: str) -> str:
          if not is_valid_address(value):
               raise ValueError("Invalid EVM address")
          return value


class DeliverResponse(BaseModel):
     """Outcome of a delivery attempt (200 committed, 202 uncertain)."""

     success: bool
     state: str = Field(..., description="COMMITTED, UNCERTAIN or REJECTED")
     message: str
     paymentId: str
     txHash: Optional[str] = Field(None, description="Transaction hash of the NFT transfer")
     nftsOwnedNow: Optional[int] = Field(None, description="Recipient holding after delivery")
     replayed: bool = Field(False, description="True when answered from the recorded outcome")


class DeliveryErrorResponse(BaseModel):
     success: bool = False
     state: str = "REJECTED"
     error: str
     reason: str
     paymentId: str
     detail: Dict[str, Any] = Field(default_factory=dict)


class SupplyResponse(BaseModel):
     remaining: int
     soldOut: bool
