from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime


class SubscriptionStatusResponse(BaseModel):
    status: str
    plan: Optional[str] = None
    expiresAt: Optional[datetime] = None
    isActive: bool


class ActivateRequest(BaseModel):
    user_id: int
    plan: str
    duration_days: int = Field(30, gt=0, le=3660)


class ActivateResponse(BaseModel):
    success: bool
    user_id: int
    plan: str
    status: str
    expiresAt: Optional[datetime] = None
