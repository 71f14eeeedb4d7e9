from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, Dict, Any

from services.entitlements import WebhookEventType


class EntitlementPayload(BaseModel):
    is_premium: bool = False
    expiry: Optional[int] = None  # epoch milliseconds


class ReplicaBatch(BaseModel):
    """One client push: the profile document plus changed day logs (null deletes a date)."""
    profile: Dict[str, Any]
    day_logs: Dict[str, Optional[Dict[str, Any]]] = Field(default_factory=dict)


class ReplicaResponse(BaseModel):
    profile: Dict[str, Any]
    day_logs: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    last_updated: int
    entitlement: EntitlementPayload


class ReplicaWriteResponse(BaseModel):
    user_id: str
    last_updated: int
    day_logs_written: int


class EntitlementEvent(BaseModel):
    """Verified payment-provider event, forwarded by the verification service."""
    type: WebhookEventType
    next_billing_date: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    billing_interval_count: Optional[int] = None


class EntitlementResponse(BaseModel):
    user_id: str
    entitlement: EntitlementPayload
    subscription_status: Optional[str] = None
    changed: bool
