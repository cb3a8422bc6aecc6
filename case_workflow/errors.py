"""
Workflow Error Taxonomy

Exceptions raised inside the engine. WorkflowEngine.handle() is the only place
that turns them into failure responses.
"""

from typing import Optional


class WorkflowError(Exception):
    """Base class for all workflow engine errors"""
    
    code = "workflow_error"
    retryable = False
    
    def __init__(self, message: str, report_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.report_id = report_id


class InvalidRequest(WorkflowError):
    """Request is missing required fields or names an unknown action"""
    code = "invalid_request"


class ReportNotFound(WorkflowError):
    """Report does not exist or belongs to another organization"""
    code = "report_not_found"


class NoDefaultPolicy(WorkflowError):
    """Organization has no SLA policy marked as default"""
    code = "no_default_policy"


class PolicyValidationError(WorkflowError):
    """SLA policy or assignment rule failed write-time validation"""
    code = "invalid_configuration"


class NoEscalationTarget(WorkflowError):
    """Neither an explicit target nor the policy's escalation user is available"""
    code = "no_escalation_target"


class StalePrecondition(WorkflowError):
    """Report state changed between evaluation and commit"""
    code = "stale_precondition"
    retryable = True


class UpstreamError(WorkflowError):
    """The report store failed or answered with an error status"""
    code = "upstream_error"
    retryable = True


class UpstreamTimeout(UpstreamError):
    """A report-store or persistence call exceeded its deadline"""
    code = "upstream_timeout"


class InvalidReport(WorkflowError):
    """The report store returned a row the engine cannot interpret"""
    code = "invalid_report"


class DuplicateEscalation(WorkflowError):
    """The same escalation was already applied; the end state already holds"""
    code = "duplicate_escalation"
    
    def __init__(self, message: str, report_id: Optional[str] = None,
                 escalation_id: Optional[str] = None):
        super().__init__(message, report_id)
        self.escalation_id = escalation_id
