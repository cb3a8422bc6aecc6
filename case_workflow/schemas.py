"""
Pydantic schemas for the workflow engine request/response boundary
"""

from typing import Literal, Optional
from pydantic import BaseModel, Field


class WorkflowEngineRequest(BaseModel):
    action: Literal["auto_assign", "calculate_sla", "escalate", "check_sla"]
    reportId: str = Field(..., min_length=1)
    organizationId: str = Field(..., min_length=1)
    escalateTo: Optional[str] = Field(None, description="Only for escalate")
    reason: Optional[str] = Field(None, description="Only for escalate")
    slaBreached: Optional[bool] = Field(None, description="Only for escalate")


class WorkflowEngineResponse(BaseModel):
    success: bool
    assigned_to: Optional[str] = None
    rule_name: Optional[str] = None
    sla_deadline: Optional[str] = Field(None, description="ISO-8601 timestamp")
    hours: Optional[float] = None
    sla_state: Optional[str] = None
    escalation_id: Optional[str] = None
    message: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    retryable: Optional[bool] = None

    def to_payload(self) -> dict:
        """Only the fields that were set; an explicit null assigned_to is kept"""
        return self.model_dump(exclude_unset=True)


class SweepResult(BaseModel):
    report_id: str
    sla_state: Optional[str] = None
    escalated: bool = False
    error: Optional[str] = None
