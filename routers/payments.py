# routers/payments.py
"""
Pi payment API.

POST /api/pi/create-payment: create a Pi payment priced for `quantity` NFTs.
POST /api/pi/approve-payment: server-side approval step of the Pi payment
flow. Approval only lets the user sign the payment; delivery still
requires /api/verify-and-deliver to see the payment COMPLETED.
"""
from fastapi import APIRouter, Depends, HTTPException, status

from config import Settings
from dependencies import get_pi_client, get_settings
from schemas.payment import (
     ApprovePaymentRequest,
     ApprovePaymentResponse,
     CreatePaymentRequest,
     CreatePaymentResponse,
)
from services.errors import VerificationError
from services.payment_verifier import PiPaymentsClient
from utils.log import get_logger

router = APIRouter(prefix="/api/pi", tags=["payments"])

logger = get_logger("routes.payments")


@router.post("/create-payment", response_model=CreatePaymentResponse, summary="Create Pi payment")
def create_payment(
     body: CreatePaymentRequest,
     pi_client: PiPaymentsClient = Depends(get_pi_client),
     settings: Settings = Depends(get_settings),
):
     logger.info(
          "Received POST /api/pi/create-payment",
          extra={"recipient": body.evmAddress, "quantity": body.quantity},
     )
     if body.quantity > settings.max_per_tx:
          raise HTTPException(
               status_code=status.HTTP_400_BAD_REQUEST,
               detail=f"quantity must be between 1 and {settings.max_per_tx}",
          )

     try:
          payment = pi_client.create_payment(
               amount=settings.nft_price_pi * body.quantity,
               memo=f"NFT Purchase ({body.quantity})",
               metadata={"evmAddress": body.evmAddress, "quantity": body.quantity},
               recipient_uid=settings.pi_receiver_wallet,
          )
     except VerificationError as e:
          raise HTTPException(
               status_code=status.HTTP_400_BAD_REQUEST,
               detail=f"Failed to create Pi payment: {e}",
          )
     return CreatePaymentResponse(payment=payment)


@router.post("/approve-payment", response_model=ApprovePaymentResponse, summary="Approve Pi payment")
def approve_payment(
     body: ApprovePaymentRequest,
     pi_client: PiPaymentsClient = Depends(get_pi_client),
):
     logger.info(
          "Received POST /api/pi/approve-payment",
          extra={"payment_reference": body.paymentId, "recipient": body.evmAddress},
     )
     try:
          pi_data = pi_client.approve_payment(body.paymentId)
     except VerificationError as e:
          raise HTTPException(
               status_code=status.HTTP_400_BAD_REQUEST,
               detail=f"Pi payment approval failed: {e}",
          )
     return ApprovePaymentResponse(piData=pi_data if isinstance(pi_data, dict) else {"result": pi_data})
