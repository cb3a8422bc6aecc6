"""
Assignment Rules Module

Organization-scoped assignment rules and the Rule Matcher that routes an
incoming report to the first enabled rule (by ascending priority, then
creation order) whose conditions all hold.
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Any, Sequence

from .errors import PolicyValidationError
from .models import (
    AssignmentRule, AssignmentTarget, Report, RuleConditions, TargetKind,
    URGENCY_ANY, WorkflowAction
)
from .storage import StorageInterface
from .workflow_log import WorkflowLog


logger = logging.getLogger("case_workflow.rules")


@dataclass
class MatchResult:
    """
    Outcome of rule matching. ``rule`` is set whenever a rule's conditions
    held; ``assignee`` is only set when that rule also has a target.
    """
    rule: Optional[AssignmentRule] = None
    assignee: Optional[str] = None
    target: AssignmentTarget = field(default_factory=AssignmentTarget.none)
    reason: str = "no matching rule"

    @property
    def matched(self) -> bool:
        return self.assignee is not None


def condition_failures(conditions: RuleConditions, report: Report) -> List[str]:
    """Return the condition fields that reject the report (empty list means match)"""
    failures = []

    if conditions.category and conditions.category != URGENCY_ANY:
        if report.category != conditions.category:
            failures.append('category')

    if conditions.urgency and conditions.urgency != URGENCY_ANY:
        if report.urgency.value != conditions.urgency:
            failures.append('urgency')

    if conditions.keywords:
        text = report.searchable_text.lower()
        if not any(keyword.lower() in text for keyword in conditions.keywords):
            failures.append('keywords')

    if conditions.department and report.department != conditions.department:
        failures.append('department')

    return failures


def evaluation_order(rules: Sequence[AssignmentRule]) -> List[AssignmentRule]:
    """Enabled rules by ascending priority; the stable sort keeps input order for ties"""
    return sorted((rule for rule in rules if rule.enabled), key=lambda rule: rule.priority)


class RuleMatcher:
    """Selects the assignment rule for a report"""

    def __init__(self, workflow_log: Optional[WorkflowLog] = None):
        self.workflow_log = workflow_log

    def match(self, report: Report, rules: Sequence[AssignmentRule]) -> MatchResult:
        """
        Match a report against an organization's rules.

        Args:
            report: Report to route
            rules: The organization's rules in creation order; disabled rules are ignored

        Returns:
            MatchResult; ``matched`` is False for the no-match outcome
        """
        evaluated = 0
        for rule in evaluation_order(rules):
            if rule.organization_id != report.organization_id:
                continue
            evaluated += 1
            failures = condition_failures(rule.conditions, report)
            if failures:
                logger.debug("Rule %s (priority %s) rejected report %s on %s",
                             rule.name, rule.priority, report.id, ", ".join(failures))
                continue

            if not rule.target.is_assignable:
                logger.warning("Rule %s matched report %s but has no assignment target",
                               rule.name, report.id)
                result = MatchResult(rule=rule, reason="matched rule has no assignment target")
            else:
                result = MatchResult(rule=rule, assignee=rule.target.target_id,
                                     target=rule.target, reason="conditions matched")
            self._record(report, result, evaluated)
            return result

        logger.info("No assignment rule matched report %s (%d rules evaluated)", report.id, evaluated)
        return MatchResult(reason="no matching rule")

    def _record(self, report: Report, result: MatchResult, evaluated: int) -> None:
        if not self.workflow_log:
            return
        rule = result.rule
        self.workflow_log.append(
            report.organization_id,
            report.id,
            WorkflowAction.RULE_MATCHED,
            {
                'rule_id': rule.id,
                'rule_name': rule.name,
                'priority': rule.priority,
                'conditions_matched': rule.conditions.to_dict(),
                'target': rule.target.to_dict(),
                'assigned': result.matched,
                'reason': result.reason,
                'rules_evaluated': evaluated
            }
        )


class RuleRepository:
    """Persistence and administration of assignment rules"""

    def __init__(self, storage: StorageInterface, table_name: str = "assignment_rules",
                 clock: Optional[Callable[[], datetime]] = None):
        self.storage = storage
        self.table_name = table_name
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()

    def create_rule(self, organization_id: str, name: str, priority: int,
                    conditions: Optional[RuleConditions] = None,
                    target: Optional[AssignmentTarget] = None,
                    enabled: bool = True) -> AssignmentRule:
        """Create a rule; creation order is recorded for priority tie-breaks"""
        if not name:
            raise PolicyValidationError("Rule name is required")
        if not isinstance(priority, int) or isinstance(priority, bool):
            raise PolicyValidationError("Rule priority must be an integer")

        with self._lock:
            existing = self.storage.find(self.table_name, {'organization_id': organization_id})
            sequence = max((data.get('sequence', 0) for data in existing), default=0) + 1
            now = self.clock()
            rule = AssignmentRule(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                organization_id=organization_id,
                name=name,
                priority=priority,
                conditions=conditions or RuleConditions(),
                target=target or AssignmentTarget.none(),
                enabled=enabled,
                sequence=sequence
            )
            self.storage.save(self.table_name, rule.id, rule.to_dict())

        logger.info("Created assignment rule %s for organization %s", rule.name, organization_id)
        return rule

    def get_rule(self, organization_id: str, rule_id: str) -> Optional[AssignmentRule]:
        data = self.storage.load(self.table_name, rule_id)
        if not data or data.get('organization_id') != organization_id:
            return None
        return AssignmentRule.from_dict(data)

    def update_rule(self, organization_id: str, rule_id: str, **changes: Any) -> AssignmentRule:
        """Edit name, priority, conditions, target or enabled; creation order is kept"""
        allowed = {'name', 'priority', 'conditions', 'target', 'enabled'}
        unknown = set(changes) - allowed
        if unknown:
            raise PolicyValidationError(f"Cannot update rule fields: {', '.join(sorted(unknown))}")

        with self._lock:
            rule = self.get_rule(organization_id, rule_id)
            if not rule:
                raise PolicyValidationError(f"Assignment rule not found: {rule_id}")
            for key, value in changes.items():
                setattr(rule, key, value)
            rule.updated_at = self.clock()
            self.storage.save(self.table_name, rule.id, rule.to_dict())
        return rule

    def set_enabled(self, organization_id: str, rule_id: str, enabled: bool) -> AssignmentRule:
        """Soft-enable or soft-disable a rule; rules are never deleted"""
        return self.update_rule(organization_id, rule_id, enabled=enabled)

    def list_rules(self, organization_id: str, enabled_only: bool = False) -> List[AssignmentRule]:
        """Rules of an organization in evaluation order"""
        rules = self.snapshot(organization_id)
        if enabled_only:
            return evaluation_order(rules)
        return sorted(rules, key=lambda rule: rule.priority)

    def snapshot(self, organization_id: str) -> List[AssignmentRule]:
        """All rules of an organization in creation order, read once"""
        rules = [AssignmentRule.from_dict(data)
                 for data in self.storage.find(self.table_name, {'organization_id': organization_id})]
        rules.sort(key=lambda rule: rule.sequence)
        return rules

    def as_dashboard_rows(self, organization_id: str) -> List[Dict[str, Any]]:
        """Rows in the two-column target form the dashboard reads"""
        rows = []
        for rule in self.list_rules(organization_id):
            row = rule.to_dict()
            del row['target']
            row['assign_to_user_id'] = rule.target.target_id if rule.target.kind == TargetKind.USER else None
            row['assign_to_team'] = rule.target.target_id if rule.target.kind == TargetKind.TEAM else None
            rows.append(row)
        return rows
