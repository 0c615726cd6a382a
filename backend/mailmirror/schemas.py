"""Pydantic schemas for API."""
from datetime import datetime
from pydantic import BaseModel
from typing import Optional, List


class SyncStartResponse(BaseModel):
    message: str
    status: str
    mode: str


class SyncCancelResponse(BaseModel):
    cancelled: bool
    message: str


class SyncStatusResponse(BaseModel):
    status: str
    mode: Optional[str] = None
    progress: int = 0  # percent
    message: str = ""
    processed: int = 0
    failed: int = 0
    error: Optional[str] = None
    last_synced_at: Optional[str] = None


class AbandonedMessageResponse(BaseModel):
    message_id: str
    reason: Optional[str] = None
    abandoned_at: Optional[datetime] = None
    retry_count: int = 0


class SyncDiagnosticsResponse(BaseModel):
    history_id: Optional[str] = None
    last_successful_sync: Optional[datetime] = None
    consecutive_failures: int = 0
    persistent_failed_ids: List[str] = []
    abandoned_count: int = 0
    abandoned_messages: List[AbandonedMessageResponse] = []
