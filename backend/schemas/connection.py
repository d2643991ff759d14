"""Pydantic schemas for connection lifecycle endpoints."""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

SyncSchedule = Literal["manual", "hourly", "4hours", "12hours", "daily", "weekly"]


class ConnectionCreate(BaseModel):
    """Request body for creating a pending connection."""

    provider_name: str = Field(min_length=1)
    display_name: Optional[str] = None


class ConnectionResponse(BaseModel):
    """Connection as exposed to the UI; never carries token material."""

    id: str
    tenant_id: str
    provider_name: str
    display_name: Optional[str] = None
    status: str
    health_score: int
    consecutive_failures: int
    last_sync_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    last_error: Optional[str] = None
    sync_schedule: str
    sync_enabled: bool
    sync_priority: int
    next_sync_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AuthorizationUrlResponse(BaseModel):
    url: str
    state: str


class AuthorizationCallback(BaseModel):
    """Authorization code delivered by the provider's redirect."""

    code: str = Field(min_length=1)


class AuthorizationAccepted(BaseModel):
    """Returned when the code was exchanged and the first sync was queued."""

    connection_id: str
    status: str
    sync_queued: bool = True


class ConnectionScheduleUpdate(BaseModel):
    """Scheduling settings; omitted fields are left unchanged."""

    sync_schedule: Optional[SyncSchedule] = None
    sync_enabled: Optional[bool] = None
    sync_priority: Optional[int] = Field(default=None, ge=0, le=100)
