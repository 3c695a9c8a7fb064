# schemas/auth.py
from typing import Any, Dict
from pydantic import BaseModel, Field


class VerifyUserRequest(BaseModel):
     """Pi access token obtained by the frontend from Pi.authenticate()."""

     jwt: str = Field(..., min_length=1, description="Pi Network access token")


class VerifyUserResponse(BaseModel):
     success: bool = True
     user: Dict[str, Any]
     token: str = Field(..., description="Bearer token for the delivery endpoints")
