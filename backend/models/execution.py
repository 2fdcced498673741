# models/execution.py
from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, Optional
from datetime import datetime
from enum import Enum


class ExecutionStatus(str, Enum):
    """Persisted status vocabulary; the dispatch sweep matches these strings exactly"""
    PENDING = "pending"
    SCHEDULED = "scheduled"
    SENT = "sent"
    FAILED = "failed"


class ExecutionOutcome(str, Enum):
    """Per-item result of one dispatch attempt"""
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"
    RETRYING = "retrying"


class AutomationExecution(BaseModel):
    """One (rule, contact, trigger occurrence) row in email_automation_executions"""
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    id: str
    org_id: str
    rule_id: str
    contact_id: str
    trigger_type: str
    trigger_data: Dict[str, Any] = Field(default_factory=dict)
    status: ExecutionStatus
    scheduled_for: Optional[datetime] = None
    email_template_id: Optional[str] = None
    email_subject: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 3
    next_retry_at: Optional[datetime] = None
    error_message: Optional[str] = None
    sent_at: Optional[datetime] = None
    ab_test_id: Optional[str] = None
    ab_variant_name: Optional[str] = None
    ab_subject_override: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class SweepSummary(BaseModel):
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    retried: int = 0
    processed: int = 0
