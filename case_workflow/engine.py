"""
Workflow Engine Module

Entry point of the case workflow engine. Wires the Rule Matcher, SLA
Calculator, SLA Tracker and Escalation Coordinator around one storage
backend, one report store and one clock, and exposes the request/response
contract used by the dashboard. handle() never raises: every failure comes
back as a response with success=False.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import ValidationError

from .config import WorkflowConfig
from .errors import (
    DuplicateEscalation, InvalidRequest, NoDefaultPolicy, NoEscalationTarget,
    ReportNotFound, StalePrecondition, WorkflowError
)
from .escalation import EscalationCoordinator
from .logging_config import log_action
from .models import Report, SLAPolicy, SLAState, WorkflowAction
from .notifications import (
    LogNotificationDispatcher, NotificationDispatcher, WorkflowNotification, build_dispatcher
)
from .reports import HttpReportStore, InMemoryReportStore, ReportStore
from .rules import RuleMatcher, RuleRepository
from .schemas import SweepResult, WorkflowEngineRequest, WorkflowEngineResponse
from .sla import PolicyRepository, SLACalculator, SLACheck, SLATracker
from .storage import StorageInterface, create_storage
from .workflow_log import WorkflowLog


logger = logging.getLogger("case_workflow.engine")


class WorkflowEngine:
    """Workflow automation for one deployment; every call is scoped by organization"""

    def __init__(self, storage: StorageInterface, reports: ReportStore,
                 config: Optional[WorkflowConfig] = None,
                 notifier: Optional[NotificationDispatcher] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.config = config or WorkflowConfig()
        self.storage = storage
        self.reports = reports
        self.notifier = notifier or LogNotificationDispatcher()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.timeout = self.config.upstream_timeout_seconds

        self.workflow_log = WorkflowLog(storage, clock=self.clock)
        self.rules = RuleRepository(storage, clock=self.clock)
        self.policies = PolicyRepository(storage, clock=self.clock,
                                         enforce_tier_order=self.config.enforce_sla_tier_order)
        self.matcher = RuleMatcher(self.workflow_log)
        self.sla = SLACalculator(storage, self.policies, self.workflow_log, clock=self.clock)
        self.tracker = SLATracker(storage, self.workflow_log,
                                  warning_fraction=self.config.sla_warning_fraction, clock=self.clock)
        self.escalations = EscalationCoordinator(
            storage, reports, self.workflow_log, clock=self.clock,
            manual_dedupe_seconds=self.config.manual_escalation_dedupe_seconds,
            timeout=self.timeout
        )

    # Request boundary

    def handle(self, request: Union[WorkflowEngineRequest, Dict[str, Any]]) -> WorkflowEngineResponse:
        """Route a request to its action and convert every failure into a response"""
        try:
            if not isinstance(request, WorkflowEngineRequest):
                request = self._parse(request)

            log_action(logger, "info", f"Workflow action {request.action}",
                       report_id=request.reportId, organization_id=request.organizationId,
                       action=request.action)

            if request.action == "auto_assign":
                return self.auto_assign(request.organizationId, request.reportId)
            if request.action == "calculate_sla":
                return self.calculate_sla(request.organizationId, request.reportId)
            if request.action == "check_sla":
                return self.check_sla(request.organizationId, request.reportId)
            return self.escalate(request.organizationId, request.reportId,
                                 escalate_to=request.escalateTo, reason=request.reason,
                                 sla_breached=bool(request.slaBreached))
        except WorkflowError as e:
            log_action(logger, "warning", f"Workflow request failed: {e.message}",
                       report_id=e.report_id, action=e.code)
            return WorkflowEngineResponse(success=False, error=e.message,
                                          error_code=e.code, retryable=e.retryable)
        except Exception:
            logger.exception("Unexpected error handling workflow request")
            return WorkflowEngineResponse(success=False, error="internal error",
                                          error_code="internal_error", retryable=False)

    @staticmethod
    def _parse(payload: Dict[str, Any]) -> WorkflowEngineRequest:
        try:
            return WorkflowEngineRequest.model_validate(payload)
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors())
            raise InvalidRequest(f"Invalid request: {problems}") from e

    # Actions

    def auto_assign(self, organization_id: str, report_id: str) -> WorkflowEngineResponse:
        """Route a new or re-prioritized report through the organization's rules"""
        report = self._load_report(organization_id, report_id)
        rules = self.rules.snapshot(organization_id)
        result = self.matcher.match(report, rules)

        if not result.matched:
            message = "No matching rule"
            if result.rule:
                message = f"Rule '{result.rule.name}' matched but has no assignment target"
            return WorkflowEngineResponse(success=True, assigned_to=None, message=message)

        if report.assigned_to != result.assignee:
            changed = self.reports.reassign(organization_id, report_id, result.assignee,
                                            expected_owner=report.assigned_to, timeout=self.timeout)
            if not changed:
                raise StalePrecondition(f"Report {report_id} changed while being assigned", report_id)

        self.workflow_log.append(organization_id, report_id, WorkflowAction.AUTO_ASSIGNED, {
            'rule_id': result.rule.id,
            'rule_name': result.rule.name,
            'priority': result.rule.priority,
            'assigned_to': result.assignee,
            'target_kind': result.target.kind.value,
            'previous_owner': report.assigned_to,
            'conditions_matched': result.rule.conditions.to_dict()
        })
        return WorkflowEngineResponse(success=True, assigned_to=result.assignee,
                                      rule_name=result.rule.name)

    def calculate_sla(self, organization_id: str, report_id: str,
                      policy: Optional[SLAPolicy] = None) -> WorkflowEngineResponse:
        """Compute the report's deadline from its creation time and urgency"""
        report = self._load_report(organization_id, report_id)
        deadline = self.sla.build_deadline(report, policy)
        self.reports.set_sla_deadline(organization_id, report_id, deadline.deadline, timeout=self.timeout)
        self.sla.record(deadline)
        return WorkflowEngineResponse(success=True, sla_deadline=deadline.deadline.isoformat(),
                                      hours=deadline.hours)

    def process_report(self, organization_id: str, report_id: str) -> WorkflowEngineResponse:
        """Report creation or urgency change: assign, then compute the deadline"""
        assignment = self.auto_assign(organization_id, report_id)
        sla = self.calculate_sla(organization_id, report_id)
        return WorkflowEngineResponse(
            success=True,
            assigned_to=assignment.assigned_to,
            rule_name=assignment.rule_name,
            sla_deadline=sla.sla_deadline,
            hours=sla.hours,
            message=assignment.message
        )

    def escalate(self, organization_id: str, report_id: str, escalate_to: Optional[str] = None,
                 reason: Optional[str] = None, sla_breached: bool = False) -> WorkflowEngineResponse:
        """Escalate a report manually or on behalf of a breach"""
        report = self._load_report(organization_id, report_id)
        policy = self._policy_for_escalation(organization_id, report_id)
        deadline = self.sla.get_deadline(organization_id, report_id) if sla_breached else None

        try:
            escalation = self.escalations.escalate(
                organization_id, report_id, report.assigned_to,
                reason=reason, sla_breached=sla_breached, escalate_to=escalate_to,
                policy=policy, deadline=deadline.deadline if deadline else None
            )
        except DuplicateEscalation as e:
            return WorkflowEngineResponse(success=True, escalation_id=e.escalation_id,
                                          message=f"Already escalated: {e.message}")

        self._notify(WorkflowAction.ESCALATED, organization_id, report_id, escalation.escalated_to, {
            'escalation_id': escalation.id,
            'from': escalation.escalated_from,
            'reason': reason,
            'sla_breached': sla_breached
        })
        return WorkflowEngineResponse(success=True, assigned_to=escalation.escalated_to,
                                      escalation_id=escalation.id, message="Case escalated")

    def check_sla(self, organization_id: str, report_id: str,
                  now: Optional[datetime] = None) -> WorkflowEngineResponse:
        """Breach check for one report; escalates on breach when the policy says so"""
        report = self._load_report(organization_id, report_id)
        deadline = self.sla.get_deadline(organization_id, report_id)
        if deadline is None:
            return WorkflowEngineResponse(success=True, message="No SLA deadline recorded")

        check = self.tracker.check(deadline, now)
        response = WorkflowEngineResponse(success=True, sla_state=check.state.value,
                                          sla_deadline=deadline.deadline.isoformat(),
                                          hours=deadline.hours)
        if check.first_breach:
            self._notify(WorkflowAction.SLA_BREACHED, organization_id, report_id, None, {
                'deadline': deadline.deadline,
                'hours': deadline.hours
            })
        if check.state == SLAState.BREACHED:
            escalation = self._escalate_breach(check, report)
            if escalation:
                response.assigned_to = escalation.escalated_to
                response.escalation_id = escalation.id
                response.message = "SLA breached, case escalated"
        return response

    def sweep(self, organization_id: str, now: Optional[datetime] = None) -> List[SweepResult]:
        """Periodic breach check over every tracked deadline of an organization"""
        results = []
        for deadline in self.sla.list_deadlines(organization_id):
            try:
                response = self.check_sla(organization_id, deadline.report_id, now)
                results.append(SweepResult(report_id=deadline.report_id, sla_state=response.sla_state,
                                           escalated=response.escalation_id is not None))
            except WorkflowError as e:
                log_action(logger, "warning", f"SLA check failed: {e.message}",
                           report_id=deadline.report_id, organization_id=organization_id, action=e.code)
                results.append(SweepResult(report_id=deadline.report_id, error=e.message))
        return results

    # Dashboard queries

    def history(self, organization_id: str, report_id: str) -> Dict[str, Any]:
        deadline = self.sla.get_deadline(organization_id, report_id)
        return {
            'report_id': report_id,
            'sla_deadline': deadline.deadline.isoformat() if deadline else None,
            'logs': [entry.to_dict() for entry in self.workflow_log.entries_for_report(organization_id, report_id)],
            'escalations': [e.to_dict() for e in self.escalations.escalations_for_report(organization_id, report_id)]
        }

    # Helpers

    def _load_report(self, organization_id: str, report_id: str) -> Report:
        report = self.reports.get_report(organization_id, report_id, timeout=self.timeout)
        if report is None or report.deleted:
            raise ReportNotFound(f"Report {report_id} not found", report_id)
        return report

    def _policy_for_escalation(self, organization_id: str, report_id: str) -> Optional[SLAPolicy]:
        deadline = self.sla.get_deadline(organization_id, report_id)
        try:
            return self.policies.resolve(organization_id, deadline.policy_id if deadline else None)
        except NoDefaultPolicy:
            return None

    def _escalate_breach(self, check: SLACheck, report: Report):
        deadline = check.deadline
        policy = self.policies.resolve(deadline.organization_id, deadline.policy_id)
        if not policy.escalate_after_breach:
            return None

        try:
            escalation = self.escalations.escalate(
                deadline.organization_id, deadline.report_id, report.assigned_to,
                reason=f"SLA breached: {deadline.hours}h response time exceeded",
                sla_breached=True, policy=policy, deadline=deadline.deadline
            )
        except DuplicateEscalation:
            return None
        except NoEscalationTarget as e:
            log_action(logger, "warning", f"Breach not escalated: {e.message}",
                       report_id=deadline.report_id, organization_id=deadline.organization_id,
                       action=e.code)
            return None

        self._notify(WorkflowAction.ESCALATED, deadline.organization_id, deadline.report_id,
                     escalation.escalated_to, {
                         'escalation_id': escalation.id,
                         'from': escalation.escalated_from,
                         'sla_breached': True
                     })
        return escalation

    def _notify(self, action: WorkflowAction, organization_id: str, report_id: str,
                recipient_id: Optional[str], details: Dict[str, Any]) -> None:
        notification = WorkflowNotification(action=action, organization_id=organization_id,
                                            report_id=report_id, recipient_id=recipient_id,
                                            details=details, timestamp=self.clock())
        if not self.notifier.notify(notification):
            logger.warning("Notification %s for report %s was not delivered", action.value, report_id)


def build_engine(config: WorkflowConfig, clock: Optional[Callable[[], datetime]] = None) -> WorkflowEngine:
    """Engine wired from configuration: storage URL, report store URL and webhook"""
    storage = create_storage(config.database_url)
    if config.report_store_url:
        reports = HttpReportStore(config.report_store_url, api_key=config.report_store_api_key or None)
    else:
        reports = InMemoryReportStore()
    notifier = build_dispatcher(config.notification_webhook_url, config.notification_timeout_seconds)
    return WorkflowEngine(storage, reports, config=config, notifier=notifier, clock=clock)
