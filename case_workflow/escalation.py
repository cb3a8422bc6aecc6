"""
Escalation Module

Reassigns a report to an escalation target and records an immutable
CaseEscalation. Escalations are serialized per report and deduplicated on
(report, target, triggering deadline): an SLA breach is escalated at most
once per deadline, and identical manual escalations inside a short window
collapse into one.
"""

import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone, timedelta
from typing import Callable, Dict, List, Optional

from .errors import DuplicateEscalation, NoEscalationTarget, ReportNotFound, StalePrecondition
from .models import CaseEscalation, SLAPolicy, WorkflowAction
from .reports import ReportStore
from .storage import StorageInterface
from .workflow_log import WorkflowLog


logger = logging.getLogger("case_workflow.escalation")


class EscalationArena:
    """
    Per-report state for escalation: a mutual-exclusion lock and the key of
    the last escalation handled, updated with compare-and-set. A report's
    entries live only while some caller holds or waits for its lock.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._holders: Dict[str, int] = {}
        self._last_handled: Dict[str, Optional[str]] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, report_id: str):
        with self._guard:
            lock = self._locks.setdefault(report_id, threading.Lock())
            self._holders[report_id] = self._holders.get(report_id, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._holders[report_id] -= 1
                if not self._holders[report_id]:
                    del self._holders[report_id]
                    del self._locks[report_id]
                    self._last_handled.pop(report_id, None)

    def last_handled(self, report_id: str) -> Optional[str]:
        with self._guard:
            return self._last_handled.get(report_id)

    def compare_and_set(self, report_id: str, expected: Optional[str], new: str) -> bool:
        with self._guard:
            if self._last_handled.get(report_id) != expected:
                return False
            self._last_handled[report_id] = new
            return True


def dedupe_key(organization_id: str, report_id: str, escalated_to: str,
               deadline: Optional[datetime]) -> str:
    return ":".join([
        organization_id, report_id, escalated_to,
        deadline.isoformat() if deadline else "manual"
    ])


class EscalationCoordinator:
    """Applies escalations with precondition checks and dedupe"""

    def __init__(self, storage: StorageInterface, reports: ReportStore, workflow_log: WorkflowLog,
                 clock: Optional[Callable[[], datetime]] = None,
                 manual_dedupe_seconds: int = 60, timeout: float = 5.0,
                 table_name: str = "case_escalations", keys_table: str = "escalation_keys"):
        self.storage = storage
        self.reports = reports
        self.workflow_log = workflow_log
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.manual_dedupe_window = timedelta(seconds=manual_dedupe_seconds)
        self.timeout = timeout
        self.table_name = table_name
        self.keys_table = keys_table
        self.arena = EscalationArena()

    @staticmethod
    def resolve_target(escalate_to: Optional[str], policy: Optional[SLAPolicy]) -> str:
        """Explicit target first, then the policy's escalation user"""
        if escalate_to:
            return escalate_to
        if policy and policy.escalate_to_user_id:
            return policy.escalate_to_user_id
        raise NoEscalationTarget("No escalation target given and the SLA policy names no escalation user")

    def escalate(self, organization_id: str, report_id: str, current_owner: Optional[str],
                 reason: Optional[str] = None, sla_breached: bool = False,
                 escalate_to: Optional[str] = None, policy: Optional[SLAPolicy] = None,
                 deadline: Optional[datetime] = None) -> CaseEscalation:
        """
        Escalate a report.

        Args:
            organization_id: Owning organization
            report_id: Report to escalate
            current_owner: Owner observed when the escalation was decided
            reason: Free-text reason recorded on the escalation
            sla_breached: True when triggered by an SLA breach
            escalate_to: Explicit target; falls back to the policy's escalation user
            policy: SLA policy used for the fallback target
            deadline: SLA deadline whose breach triggered the escalation

        Returns:
            The new CaseEscalation

        Raises:
            NoEscalationTarget: no target could be resolved
            DuplicateEscalation: this escalation was already applied
            StalePrecondition: the report was deleted or reassigned since current_owner was read
            UpstreamTimeout: the report store did not answer in time
        """
        target = self.resolve_target(escalate_to, policy)
        trigger = deadline if sla_breached else None
        # Without a triggering deadline a breach flag dedupes like a manual escalation
        per_deadline = trigger is not None
        key = dedupe_key(organization_id, report_id, target, trigger)

        with self.arena.hold(report_id):
            previous_key = self.arena.last_handled(report_id)
            self._check_duplicate(organization_id, report_id, key, per_deadline)

            # Precondition re-check immediately before commit
            report = self.reports.get_report(organization_id, report_id, timeout=self.timeout)
            if report is None:
                raise ReportNotFound(f"Report {report_id} not found", report_id)
            if report.deleted:
                raise StalePrecondition(f"Report {report_id} was deleted", report_id)
            if report.assigned_to != current_owner:
                raise StalePrecondition(
                    f"Report {report_id} was reassigned from {current_owner} to {report.assigned_to}",
                    report_id)

            now = self.clock()
            claim_id = self._claim_id(key, now, per_deadline)
            if not self.storage.insert_if_absent(self.keys_table, claim_id, {
                'id': claim_id,
                'organization_id': organization_id,
                'report_id': report_id,
                'dedupe_key': key,
                'claimed_at': now.isoformat()
            }):
                raise DuplicateEscalation(f"Escalation of report {report_id} to {target} already claimed",
                                          report_id)

            try:
                changed = self.reports.reassign(organization_id, report_id, target,
                                                expected_owner=current_owner, timeout=self.timeout)
            except Exception:
                self.storage.delete(self.keys_table, claim_id)
                raise
            if not changed:
                self.storage.delete(self.keys_table, claim_id)
                raise StalePrecondition(f"Report {report_id} changed owner during escalation", report_id)

            escalation = CaseEscalation(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                organization_id=organization_id,
                report_id=report_id,
                escalated_to=target,
                escalated_from=current_owner,
                reason=reason,
                sla_breached=sla_breached,
                deadline=trigger
            )
            data = escalation.to_dict()
            data['dedupe_key'] = key
            self.storage.insert_if_absent(self.table_name, escalation.id, data)
            self.arena.compare_and_set(report_id, previous_key, key)

        self._log(escalation)
        logger.info("Escalated report %s from %s to %s (sla_breached=%s)",
                    report_id, current_owner, target, sla_breached)
        return escalation

    def escalations_for_report(self, organization_id: str, report_id: str) -> List[CaseEscalation]:
        rows = self.storage.find(self.table_name, {'organization_id': organization_id, 'report_id': report_id})
        escalations = []
        for data in rows:
            data.pop('dedupe_key', None)
            escalations.append(CaseEscalation.from_dict(data))
        return sorted(escalations, key=lambda e: e.created_at)

    def _check_duplicate(self, organization_id: str, report_id: str, key: str, per_deadline: bool) -> None:
        existing = self.storage.find(self.table_name, {
            'organization_id': organization_id, 'report_id': report_id, 'dedupe_key': key})
        if not existing:
            if per_deadline and self.arena.last_handled(report_id) == key:
                raise DuplicateEscalation(f"Breach of report {report_id} already escalated", report_id)
            return
        latest = max(existing, key=lambda data: data['created_at'])
        if per_deadline:
            raise DuplicateEscalation(f"Breach of report {report_id} already escalated",
                                      report_id, escalation_id=latest['id'])
        created_at = datetime.fromisoformat(latest['created_at'])
        if self.clock() - created_at < self.manual_dedupe_window:
            raise DuplicateEscalation(f"Report {report_id} was escalated to the same user moments ago",
                                      report_id, escalation_id=latest['id'])

    def _claim_id(self, key: str, now: datetime, per_deadline: bool) -> str:
        if per_deadline:
            return key
        # Manual claims are bucketed by the dedupe window so later escalations can proceed
        window = max(int(self.manual_dedupe_window.total_seconds()), 1)
        return f"{key}:{int(now.timestamp()) // window}"

    def _log(self, escalation: CaseEscalation) -> None:
        details = {
            'escalation_id': escalation.id,
            'from': escalation.escalated_from,
            'to': escalation.escalated_to,
            'reason': escalation.reason,
            'sla_breached': escalation.sla_breached,
            'deadline': escalation.deadline
        }
        self.workflow_log.append(escalation.organization_id, escalation.report_id,
                                 WorkflowAction.ESCALATED, details)
        if not escalation.sla_breached:
            self.workflow_log.append(escalation.organization_id, escalation.report_id,
                                     WorkflowAction.MANUALLY_REASSIGNED, details)
