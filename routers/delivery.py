# routers/delivery.py
"""
Delivery API.

POST /api/verify-and-deliver: verify a Pi payment and transfer the NFTs.
GET  /api/deliveries/{payment_id}: recorded outcome for a payment (re-check).
GET  /api/nft/supply: remaining supply.

Handlers are plain `def` so FastAPI runs each request on its worker pool;
a client disconnect does not interrupt a transfer that is already running.
"""
from fastapi import APIRouter, Depends, HTTPException, Response, status
from fastapi.responses import JSONResponse

from config import Settings
from dependencies import get_ledger, get_pipeline, get_settings, verify_token
from schemas.delivery import DeliverRequest, DeliverResponse, DeliveryErrorResponse, SupplyResponse
from services.delivery_pipeline import DeliveryOutcome, DeliveryPipeline, DeliveryRequest
from services.supply_ledger import SupplyLedger
from utils.log import get_logger

router = APIRouter(prefix="/api", tags=["delivery"])

logger = get_logger("routes.delivery")

REJECTION_STATUS = {
     "payment_rejected": status.HTTP_400_BAD_REQUEST,
     "cap_exceeded": status.HTTP_400_BAD_REQUEST,
     "supply_exhausted": status.HTTP_409_CONFLICT,
     "delivery_in_progress": status.HTTP_409_CONFLICT,
     "malformed_response": status.HTTP_502_BAD_GATEWAY,
     "holding_unavailable": status.HTTP_502_BAD_GATEWAY,
     "delivery_failed": status.HTTP_502_BAD_GATEWAY,
}


def _rejection_status(outcome: DeliveryOutcome) -> int:
     if outcome.reason == "upstream_unavailable":
          # Pi answered with a 4xx: the payment id itself is bad
          upstream = outcome.detail.get("status_code")
          if upstream is not None and 400 <= upstream < 500:
               return status.HTTP_400_BAD_REQUEST
          return status.HTTP_502_BAD_GATEWAY
     return REJECTION_STATUS.get(outcome.reason, status.HTTP_400_BAD_REQUEST)


def _render(outcome: DeliveryOutcome, response: Response):
     if outcome.rejected:
          detail = {k: v for k, v in outcome.detail.items() if k != "upstream"}
          if outcome.transfer_id:
               detail["txHash"] = outcome.transfer_id
          body = DeliveryErrorResponse(
               error=outcome.message,
               reason=outcome.reason,
               paymentId=outcome.payment_reference,
               detail=detail,
          )
          return JSONResponse(status_code=_rejection_status(outcome), content=body.model_dump())

     if outcome.uncertain:
          response.status_code = status.HTTP_202_ACCEPTED
     return DeliverResponse(
          success=outcome.committed,
          state=outcome.state.value,
          message=outcome.message,
          paymentId=outcome.payment_reference,
          txHash=outcome.transfer_id,
          nftsOwnedNow=outcome.holding,
          replayed=outcome.replayed,
     )


@router.post(
     "/verify-and-deliver",
     response_model=DeliverResponse,
     responses={
          202: {"model": DeliverResponse, "description": "Transfer submitted, confirmation pending"},
          400: {"model": DeliveryErrorResponse},
          409: {"model": DeliveryErrorResponse},
          502: {"model": DeliveryErrorResponse},
     },
     summary="Verify payment and deliver NFTs",
)
def verify_and_deliver(
     body: DeliverRequest,
     response: Response,
     pipeline: DeliveryPipeline = Depends(get_pipeline),
     settings: Settings = Depends(get_settings),
     token: dict = Depends(verify_token),
):
     """
     Deliver `quantity` NFTs to `recipientEvmAddress` for a completed Pi payment.

     Repeating the call with the same paymentId never transfers twice: it
     returns the recorded outcome (same txHash).
     """
     logger.info(
          "Received POST /api/verify-and-deliver",
          extra={
               "payment_reference": body.paymentId,
               "recipient": body.recipientEvmAddress,
               "quantity": body.quantity,
               "pi_uid": token.get("uid"),
          },
     )
     if body.quantity > settings.max_per_tx:
          raise HTTPException(
               status_code=status.HTTP_400_BAD_REQUEST,
               detail=f"quantity must be between 1 and {settings.max_per_tx}",
          )

     outcome = pipeline.deliver(
          DeliveryRequest(
               payment_reference=body.paymentId,
               recipient=body.recipientEvmAddress,
               units=body.quantity,
          )
     )
     return _render(outcome, response)


@router.get(
     "/deliveries/{payment_id}",
     response_model=DeliverResponse,
     responses={404: {"description": "No delivery recorded for this payment"}},
     summary="Re-check a delivery",
)
def get_delivery(
     payment_id: str,
     response: Response,
     pipeline: DeliveryPipeline = Depends(get_pipeline),
     token: dict = Depends(verify_token),
):
     outcome = pipeline.status(payment_id)
     if outcome is None:
          raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"No delivery for payment {payment_id}")
     return _render(outcome, response)


@router.get("/nft/supply", response_model=SupplyResponse, summary="Remaining NFT supply")
def get_supply(ledger: SupplyLedger = Depends(get_ledger)):
     remaining = ledger.remaining()
     return SupplyResponse(remaining=remaining, soldOut=remaining <= 0)
