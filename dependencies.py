# dependencies.py
"""
FastAPI dependencies shared by the routers: settings, services and the
bearer-token session check.
"""
from datetime import datetime, timedelta, timezone

from fastapi import Depends, HTTPException, Request
from jose import JWTError, jwt

from config import Settings
from services.delivery_pipeline import DeliveryPipeline
from services.factory import Services
from services.payment_verifier import PiPaymentsClient
from services.supply_ledger import SupplyLedger

ALGORITHM = "HS256"
SESSION_TTL = timedelta(hours=24)


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_pipeline(services: Services = Depends(get_services)) -> DeliveryPipeline:
    return services.pipeline


def get_ledger(services: Services = Depends(get_services)) -> SupplyLedger:
    return services.ledger


def get_pi_client(services: Services = Depends(get_services)) -> PiPaymentsClient:
    return services.pi_client


def create_session_token(user: dict, secret: str) -> str:
    """Sign a session token for a Pi user verified through /v2/me."""
    now = datetime.now(timezone.utc)
    claims = {
        "uid": user.get("uid"),
        "username": user.get("username"),
        "iat": int(now.timestamp()),
        "exp": int((now + SESSION_TTL).timestamp()),
    }
    return jwt.encode(claims, secret, algorithm=ALGORITHM)


# Token Auth Dependency
def verify_token(request: Request, settings: Settings = Depends(get_settings)) -> dict:
    auth = request.headers.get("Authorization")
    if not auth or not auth.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Unauthorized. Login with Pi first.")
    token = auth.split(" ", 1)[1]
    try:
        payload = jwt.decode(token, settings.session_secret, algorithms=[ALGORITHM])
    except JWTError:
        raise HTTPException(status_code=403, detail="Invalid token")
    if not payload.get("uid"):
        raise HTTPException(status_code=403, detail="Invalid token")
    return payload
