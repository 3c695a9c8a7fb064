# routers/auth.py
"""
Pi Network login.

POST /api/verify-user: check a Pi access token against Pi's /v2/me and
exchange it for a signed session token used by the delivery endpoints.
"""
import requests
from fastapi import APIRouter, Depends, HTTPException, status

from config import Settings
from dependencies import create_session_token, get_settings
from schemas.auth import VerifyUserRequest, VerifyUserResponse
from utils.log import get_logger

router = APIRouter(prefix="/api", tags=["auth"])

logger = get_logger("routes.auth")


@router.post("/verify-user", response_model=VerifyUserResponse, summary="Verify Pi user")
def verify_user(body: VerifyUserRequest, settings: Settings = Depends(get_settings)):
     try:
          response = requests.get(
               settings.pi_me_url,
               headers={"Authorization": f"Bearer {body.jwt}"},
               timeout=settings.pi_api_timeout,
          )
     except requests.RequestException as e:
          logger.error("Pi API unreachable", extra={"error": str(e)})
          raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Pi API unreachable")

     if response.status_code != 200:
          logger.warning("Invalid Pi JWT", extra={"status": response.status_code, "error_text": response.text})
          raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid Pi JWT")

     try:
          user = response.json()
     except ValueError:
          raise HTTPException(
               status_code=status.HTTP_502_BAD_GATEWAY,
               detail="Failed to parse Pi API response as JSON.",
          )
     if not isinstance(user, dict) or not user.get("uid"):
          raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Pi API returned no user")

     return VerifyUserResponse(user=user, token=create_session_token(user, settings.session_secret))
