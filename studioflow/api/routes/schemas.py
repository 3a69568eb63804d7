"""
API Schemas

Request and response models for the operator API.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from ...domain.models import (
    BusinessTrigger, DelaySpec, MessageContent, QuietHours
)
from ...domain.enums import (
    AnchorEventType, AutomationKind, BusinessTriggerType, DeliveryChannel
)


# =============================================================================
# Automation Schemas
# =============================================================================

class AutomationStepInput(BaseModel):
    """One step of a communication automation"""
    step_id: Optional[str] = None
    step_index: int = Field(..., ge=0)
    action: DeliveryChannel
    delay: DelaySpec = Field(default_factory=DelaySpec)
    content: Optional[MessageContent] = None
    quiet_hours: Optional[QuietHours] = None
    enabled: bool = True


class CreateAutomationRequest(BaseModel):
    """Request to create an automation"""
    name: str = Field("", max_length=200)
    kind: AutomationKind
    channel: DeliveryChannel
    scope_stage_id: Optional[str] = Field(None, description="Omit for a global automation")
    project_type: str = "WEDDING"
    enabled: bool = True
    content: Optional[MessageContent] = None
    delay: Optional[DelaySpec] = None
    steps: List[AutomationStepInput] = Field(default_factory=list)
    quiet_hours: Optional[QuietHours] = None
    target_stage_id: Optional[str] = None
    business_triggers: List[BusinessTrigger] = Field(default_factory=list)
    anchor_event: Optional[AnchorEventType] = None
    days_before: Optional[int] = None
    stage_condition: Optional[str] = None


class UpdateAutomationRequest(BaseModel):
    """Partial update; kind and scope identity are fixed at creation"""
    name: Optional[str] = Field(None, max_length=200)
    scope_stage_id: Optional[str] = None
    project_type: Optional[str] = None
    channel: Optional[DeliveryChannel] = None
    content: Optional[MessageContent] = None
    delay: Optional[DelaySpec] = None
    steps: Optional[List[AutomationStepInput]] = None
    quiet_hours: Optional[QuietHours] = None
    target_stage_id: Optional[str] = None
    business_triggers: Optional[List[BusinessTrigger]] = None
    anchor_event: Optional[AnchorEventType] = None
    days_before: Optional[int] = None
    stage_condition: Optional[str] = None


class AutomationListResponse(BaseModel):
    items: List[Dict[str, Any]]
    total: int


# =============================================================================
# Campaign Schemas
# =============================================================================

class CampaignEmailInput(BaseModel):
    """One email of a new campaign; approval starts PENDING"""
    sequence_index: int = Field(..., ge=0)
    subject: str = Field(..., min_length=1, max_length=500)
    html_body: str = ""
    text_body: Optional[str] = None
    day_offset: Optional[int] = Field(None, ge=0)
    week_offset: Optional[int] = Field(None, ge=0)


class CreateCampaignRequest(BaseModel):
    """Request to create a drip campaign in DRAFT"""
    name: str = Field("", max_length=200)
    target_stage_id: str
    project_type: str = "WEDDING"
    emails: List[CampaignEmailInput] = Field(..., min_length=1)
    max_duration_months: Optional[int] = Field(None, ge=1)
    stop_after_event_date: bool = True


class CampaignListResponse(BaseModel):
    items: List[Dict[str, Any]]
    total: int


# =============================================================================
# Subscription Schemas
# =============================================================================

class EnrollRequest(BaseModel):
    """Manually enrol a subject in an ACTIVE campaign"""
    campaign_id: str
    subject_id: str


class EnrollResponse(BaseModel):
    subscription: Optional[Dict[str, Any]] = None
    created: bool


# =============================================================================
# Event Schemas
# =============================================================================

class StageEnteredRequest(BaseModel):
    """A subject entered a pipeline stage"""
    subject_id: str
    stage_id: str
    occurred_at: Optional[datetime] = None


class BusinessEventRequest(BaseModel):
    """A business event (appointment booked, questionnaire submitted, ...) happened"""
    subject_id: str
    business_event: BusinessTriggerType
    occurred_at: Optional[datetime] = None


class ClockTickRequest(BaseModel):
    """Re-scan countdowns now, optionally for one subject"""
    subject_id: Optional[str] = None


# =============================================================================
# History Schemas
# =============================================================================

class HistoryResponse(BaseModel):
    """Execution records, newest first"""
    items: List[Dict[str, Any]]
    skip: int
    limit: int


class SubjectHistoryResponse(HistoryResponse):
    """Executions plus what is still scheduled for the subject"""
    due_items: List[Dict[str, Any]] = Field(default_factory=list)
    subscriptions: List[Dict[str, Any]] = Field(default_factory=list)


# =============================================================================
# Scheduler Schemas
# =============================================================================

class RunPassRequest(BaseModel):
    """Run one pass; ``now`` lets operators replay a specific instant"""
    now: Optional[datetime] = None


class SchedulerStatusResponse(BaseModel):
    enabled: bool
    running: bool
    interval_seconds: int
    server_id: str
    next_run_time: Optional[str] = None
