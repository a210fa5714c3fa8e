"""Payload models for the job types the dashboard submits."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

# Job types
POST_SCHEDULING_JOB = "post_scheduling"
BULK_POST_SCHEDULING_JOB = "bulk_post_scheduling"
ANALYTICS_COLLECTION_JOB = "analytics_collection"
SCHEDULED_ANALYTICS_JOB = "scheduled_analytics"
NOTIFICATION_DISPATCH_JOB = "notification_dispatch"
QUEUE_CLEANUP_JOB = "queue_cleanup"
HEALTH_CHECK_JOB = "health_check"

Channel = Literal["in_app", "email", "push", "sms", "webhook"]


class PostSchedulingPayload(BaseModel):
    post_id: str
    content: Any
    platforms: List[str] = Field(min_length=1)
    scheduled_for: datetime
    user_id: str
    workspace_id: str
    account_ids: Dict[str, str] = Field(default_factory=dict)
    platform_specific_settings: Optional[Dict[str, Any]] = None


class BulkPost(BaseModel):
    post_id: str
    content: Any
    platforms: List[str] = Field(min_length=1)
    scheduled_for: datetime
    account_ids: Dict[str, str] = Field(default_factory=dict)


class BulkPostSchedulingPayload(BaseModel):
    posts: List[BulkPost] = Field(min_length=1)
    user_id: str
    workspace_id: str
    batch_id: str


class AccountRef(BaseModel):
    platform: str
    account_id: str


class DateRange(BaseModel):
    start: datetime
    end: datetime


class AnalyticsCollectionPayload(BaseModel):
    user_id: str
    workspace_id: str
    accounts: List[AccountRef]
    date_range: DateRange
    metrics: List[str]
    priority: Optional[int] = None


class ScheduledAnalyticsPayload(BaseModel):
    user_id: str = "system"
    workspace_id: str = "all"
    frequency: Literal["hourly", "daily", "weekly"]
    # filled in by the processor
    accounts: List[AccountRef] = Field(default_factory=list)


class Notification(BaseModel):
    id: str
    user_id: str
    workspace_id: Optional[str] = None
    title: Optional[str] = None
    body: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)


class NotificationDispatchPayload(BaseModel):
    notification: Notification
    preferences: Dict[str, Any] = Field(default_factory=dict)
    channels: List[Channel] = Field(min_length=1)
    scheduled_for: Optional[datetime] = None
    priority: Optional[int] = None


class QueueCleanupPayload(BaseModel):
    operation: Literal["clean_completed", "clean_failed"] = "clean_completed"
    # seconds
    older_than: float = Field(default=24 * 60 * 60, ge=0)
    max_jobs: int = Field(default=1000, ge=1)


class HealthCheckPayload(BaseModel):
    check_all: bool = True
    alert_on_issues: bool = True
    failed_threshold: int = Field(default=50, ge=0)
    waiting_threshold: int = Field(default=1000, ge=0)
