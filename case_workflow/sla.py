"""
SLA Management Module

SLA policies per organization, deadline computation from a report's urgency,
and breach tracking. Breach classification is a pure function of the deadline
and the current time; the tracker persists each state transition exactly once
so that warning and breach events are emitted once per deadline and a
breached deadline never reads as ok or warning again.
"""

import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from numbers import Real
from typing import Callable, List, Optional, Any

from .errors import NoDefaultPolicy, PolicyValidationError
from .models import (
    Report, SLADeadline, SLAPolicy, SLAState, Urgency, WorkflowAction
)
from .storage import StorageInterface
from .workflow_log import WorkflowLog


logger = logging.getLogger("case_workflow.sla")

POLICY_FIELDS = {
    'name', 'critical_response_time', 'high_response_time', 'medium_response_time',
    'low_response_time', 'escalate_after_breach', 'escalate_to_user_id', 'is_default'
}


def compute_deadline(urgency: Urgency, policy: SLAPolicy, reference_time: datetime) -> datetime:
    """Deadline = reference time + the policy's ceiling for the urgency tier"""
    return reference_time + timedelta(hours=policy.hours_for(urgency))


def classify_breach(deadline: SLADeadline, now: datetime, warning_fraction: float = 0.8) -> SLAState:
    """
    Classify a deadline at a point in time.

    ``warning`` starts once ``warning_fraction`` of the window between the SLA
    anchor and the deadline has elapsed; ``breached`` once now is past the deadline.
    """
    if now > deadline.deadline:
        return SLAState.BREACHED
    window = (deadline.deadline - deadline.started_at).total_seconds()
    if window <= 0:
        return SLAState.WARNING
    elapsed = (now - deadline.started_at).total_seconds()
    if elapsed / window >= warning_fraction:
        return SLAState.WARNING
    return SLAState.OK


class PolicyRepository:
    """Persistence and administration of SLA policies"""

    def __init__(self, storage: StorageInterface, table_name: str = "sla_policies",
                 clock: Optional[Callable[[], datetime]] = None,
                 enforce_tier_order: bool = False):
        self.storage = storage
        self.table_name = table_name
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.enforce_tier_order = enforce_tier_order
        self._lock = threading.Lock()

    def create_policy(self, organization_id: str, name: str, **fields: Any) -> SLAPolicy:
        """
        Create a policy. Marking it default clears the flag on every other
        policy of the organization.
        """
        unknown = set(fields) - POLICY_FIELDS
        if unknown:
            raise PolicyValidationError(f"Unknown policy fields: {', '.join(sorted(unknown))}")

        now = self.clock()
        policy = SLAPolicy(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            organization_id=organization_id,
            name=name,
            **fields
        )
        self._validate(policy)

        with self._lock, self.storage.atomic():
            if policy.is_default:
                self._clear_default(organization_id, keep=policy.id)
            self.storage.save(self.table_name, policy.id, policy.to_dict())

        logger.info("Created SLA policy %s for organization %s (default=%s)",
                    name, organization_id, policy.is_default)
        return policy

    def update_policy(self, organization_id: str, policy_id: str, **changes: Any) -> SLAPolicy:
        unknown = set(changes) - POLICY_FIELDS
        if unknown:
            raise PolicyValidationError(f"Unknown policy fields: {', '.join(sorted(unknown))}")

        with self._lock, self.storage.atomic():
            policy = self.get_policy(organization_id, policy_id)
            if not policy:
                raise PolicyValidationError(f"SLA policy not found: {policy_id}")
            for key, value in changes.items():
                setattr(policy, key, value)
            self._validate(policy)
            policy.updated_at = self.clock()
            if policy.is_default:
                self._clear_default(organization_id, keep=policy.id)
            self.storage.save(self.table_name, policy.id, policy.to_dict())
        return policy

    def get_policy(self, organization_id: str, policy_id: str) -> Optional[SLAPolicy]:
        data = self.storage.load(self.table_name, policy_id)
        if not data or data.get('organization_id') != organization_id:
            return None
        return SLAPolicy.from_dict(data)

    def list_policies(self, organization_id: str) -> List[SLAPolicy]:
        policies = [SLAPolicy.from_dict(data)
                    for data in self.storage.find(self.table_name, {'organization_id': organization_id})]
        return sorted(policies, key=lambda p: p.created_at)

    def default_policy(self, organization_id: str) -> SLAPolicy:
        """The organization's default policy; raises NoDefaultPolicy if none is marked"""
        defaults = [SLAPolicy.from_dict(data) for data in self.storage.find(
            self.table_name, {'organization_id': organization_id, 'is_default': True})]
        if not defaults:
            raise NoDefaultPolicy(f"Organization {organization_id} has no default SLA policy")
        if len(defaults) > 1:
            raise PolicyValidationError(
                f"Organization {organization_id} has {len(defaults)} default SLA policies")
        return defaults[0]

    def resolve(self, organization_id: str, policy_id: Optional[str] = None) -> SLAPolicy:
        """An explicit policy if given and found, otherwise the default"""
        if policy_id:
            policy = self.get_policy(organization_id, policy_id)
            if policy:
                return policy
            logger.warning("SLA policy %s not found for organization %s, using default",
                           policy_id, organization_id)
        return self.default_policy(organization_id)

    def _clear_default(self, organization_id: str, keep: str) -> None:
        for data in self.storage.find(self.table_name, {'organization_id': organization_id, 'is_default': True}):
            if data['id'] != keep:
                data['is_default'] = False
                data['updated_at'] = self.clock().isoformat()
                self.storage.save(self.table_name, data['id'], data)

    def _validate(self, policy: SLAPolicy) -> None:
        if not policy.name:
            raise PolicyValidationError("SLA policy name is required")
        for urgency in Urgency:
            hours = policy.hours_for(urgency)
            if not isinstance(hours, Real) or isinstance(hours, bool) or hours <= 0:
                raise PolicyValidationError(
                    f"{urgency.policy_field} must be a positive number of hours, got {hours!r}")
        if self.enforce_tier_order:
            tiers = policy.tiers()
            if any(faster > slower for faster, slower in zip(tiers, tiers[1:])):
                raise PolicyValidationError(
                    "SLA response times must not decrease from critical to low urgency")
        if policy.escalate_after_breach and not policy.escalate_to_user_id:
            logger.warning("SLA policy %s escalates after breach but has no escalation user; "
                           "breach escalation will need an explicit target", policy.name)


class SLACalculator:
    """Computes and records SLA deadlines"""

    def __init__(self, storage: StorageInterface, policies: PolicyRepository,
                 workflow_log: WorkflowLog, table_name: str = "sla_deadlines",
                 clock: Optional[Callable[[], datetime]] = None):
        self.storage = storage
        self.policies = policies
        self.workflow_log = workflow_log
        self.table_name = table_name
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def build_deadline(self, report: Report, policy: Optional[SLAPolicy] = None,
                       reference_time: Optional[datetime] = None) -> SLADeadline:
        """
        Resolve the policy and compute the report's deadline without storing it.

        Raises:
            NoDefaultPolicy: no policy given and the organization has no default
        """
        if policy is None:
            policy = self.policies.default_policy(report.organization_id)
        started_at = reference_time or report.created_at
        now = self.clock()
        return SLADeadline(
            id=report.id,
            created_at=now,
            updated_at=now,
            organization_id=report.organization_id,
            report_id=report.id,
            policy_id=policy.id,
            urgency=report.urgency,
            hours=policy.hours_for(report.urgency),
            started_at=started_at,
            deadline=compute_deadline(report.urgency, policy, started_at)
        )

    def record(self, deadline: SLADeadline) -> SLADeadline:
        """Store the report's active deadline (replacing any previous one) and log it"""
        self.storage.save(self.table_name, deadline.id, deadline.to_dict())
        self.workflow_log.append(
            deadline.organization_id,
            deadline.report_id,
            WorkflowAction.SLA_CALCULATED,
            {
                'policy_id': deadline.policy_id,
                'urgency': deadline.urgency.value,
                'hours': deadline.hours,
                'started_at': deadline.started_at,
                'deadline': deadline.deadline
            }
        )
        logger.info("SLA deadline for report %s set to %s (%s hours)",
                    deadline.report_id, deadline.deadline.isoformat(), deadline.hours)
        return deadline

    def get_deadline(self, organization_id: str, report_id: str) -> Optional[SLADeadline]:
        data = self.storage.load(self.table_name, report_id)
        if not data or data.get('organization_id') != organization_id:
            return None
        return SLADeadline.from_dict(data)

    def list_deadlines(self, organization_id: str) -> List[SLADeadline]:
        return [SLADeadline.from_dict(data)
                for data in self.storage.find(self.table_name, {'organization_id': organization_id})]


@dataclass
class SLACheck:
    """Result of a breach check"""
    deadline: SLADeadline
    state: SLAState
    transitioned: bool = False  # True only on the check that first entered ``state``

    @property
    def first_breach(self) -> bool:
        return self.transitioned and self.state == SLAState.BREACHED


class SLATracker:
    """
    Monotonic breach tracking per (report, deadline).

    Each transition is claimed with an atomic insert keyed by the deadline and
    the state, so concurrent checks agree on which one performed it.
    """

    def __init__(self, storage: StorageInterface, workflow_log: WorkflowLog,
                 warning_fraction: float = 0.8, table_name: str = "sla_states",
                 clock: Optional[Callable[[], datetime]] = None):
        if not 0 < warning_fraction <= 1:
            raise ValueError("warning_fraction must be in (0, 1]")
        self.storage = storage
        self.workflow_log = workflow_log
        self.warning_fraction = warning_fraction
        self.table_name = table_name
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def recorded_state(self, deadline: SLADeadline) -> SLAState:
        """Highest state already recorded for this deadline"""
        state = SLAState.OK
        for candidate in (SLAState.WARNING, SLAState.BREACHED):
            if self.storage.exists(self.table_name, self._state_id(deadline, candidate)):
                state = candidate
        return state

    def check(self, deadline: SLADeadline, now: Optional[datetime] = None) -> SLACheck:
        """
        Classify the deadline and record the transition if this is the first
        check to observe it.
        """
        now = now or self.clock()
        observed = classify_breach(deadline, now, self.warning_fraction)
        recorded = self.recorded_state(deadline)
        if observed.severity <= recorded.severity:
            return SLACheck(deadline=deadline, state=recorded)

        claimed = self.storage.insert_if_absent(
            self.table_name,
            self._state_id(deadline, observed),
            {
                'id': self._state_id(deadline, observed),
                'organization_id': deadline.organization_id,
                'report_id': deadline.report_id,
                'deadline': deadline.deadline.isoformat(),
                'state': observed.value,
                'observed_at': now.isoformat()
            }
        )
        if claimed:
            self._log_transition(deadline, observed, now)
        return SLACheck(deadline=deadline, state=observed, transitioned=claimed)

    def _log_transition(self, deadline: SLADeadline, state: SLAState, now: datetime) -> None:
        action = WorkflowAction.SLA_BREACHED if state == SLAState.BREACHED else WorkflowAction.SLA_WARNING
        overdue = now - deadline.deadline
        self.workflow_log.append(
            deadline.organization_id,
            deadline.report_id,
            action,
            {
                'deadline': deadline.deadline,
                'observed_at': now,
                'hours': deadline.hours,
                'hours_overdue': round(overdue.total_seconds() / 3600, 2) if state == SLAState.BREACHED else 0
            }
        )
        logger.warning("SLA %s for report %s (deadline %s)",
                       state.value, deadline.report_id, deadline.deadline.isoformat())

    @staticmethod
    def _state_id(deadline: SLADeadline, state: SLAState) -> str:
        return f"{deadline.organization_id}:{deadline.key}:{state.value}"
