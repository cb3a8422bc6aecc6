"""
Test suite for escalation

Tests target resolution, precondition re-checks, dedupe of breach and manual
escalations, and concurrent escalation of the same report.
"""

import threading
import pytest
from datetime import timedelta

from conftest import ORG, OTHER_ORG, T0, make_report
from case_workflow.errors import (
    DuplicateEscalation, NoEscalationTarget, ReportNotFound, StalePrecondition, UpstreamTimeout
)
from case_workflow.escalation import EscalationArena, EscalationCoordinator, dedupe_key
from case_workflow.models import SLAPolicy, WorkflowAction
from case_workflow.reports import InMemoryReportStore
from case_workflow.workflow_log import WorkflowLog


DEADLINE = T0 + timedelta(hours=24)


@pytest.fixture
def workflow_log(storage, clock):
    return WorkflowLog(storage, clock=clock)


@pytest.fixture
def coordinator(storage, report_store, workflow_log, clock):
    return EscalationCoordinator(storage, report_store, workflow_log, clock=clock,
                                 manual_dedupe_seconds=60)


@pytest.fixture
def report(report_store):
    return report_store.add_report(make_report(assigned_to="u1"))


def policy_with_escalation(user_id="lead"):
    return SLAPolicy(id="p-1", created_at=T0, updated_at=T0, organization_id=ORG, name="Standard",
                     escalate_after_breach=True, escalate_to_user_id=user_id, is_default=True)


class TestTargetResolution:
    """Test explicit and policy fallback targets"""

    def test_explicit_target_wins(self):
        assert EscalationCoordinator.resolve_target("u9", policy_with_escalation()) == "u9"

    def test_policy_fallback(self):
        assert EscalationCoordinator.resolve_target(None, policy_with_escalation()) == "lead"

    def test_no_target(self):
        with pytest.raises(NoEscalationTarget):
            EscalationCoordinator.resolve_target(None, policy_with_escalation(None))
        with pytest.raises(NoEscalationTarget):
            EscalationCoordinator.resolve_target(None, None)


class TestEscalate:
    """Test applying escalations"""

    def test_manual_escalation(self, coordinator, report, report_store, workflow_log):
        escalation = coordinator.escalate(ORG, "r-1", "u1", reason="Conflict of interest", escalate_to="u2")

        assert escalation.escalated_to == "u2"
        assert escalation.escalated_from == "u1"
        assert escalation.sla_breached is False
        assert report_store.get_report(ORG, "r-1", timeout=1).assigned_to == "u2"

        actions = [e.action for e in workflow_log.entries_for_report(ORG, "r-1")]
        assert actions == [WorkflowAction.ESCALATED, WorkflowAction.MANUALLY_REASSIGNED]
        assert coordinator.escalations_for_report(ORG, "r-1") == [escalation]

    def test_breach_escalation_logs_once(self, coordinator, report, workflow_log):
        escalation = coordinator.escalate(ORG, "r-1", "u1", reason="SLA breached", sla_breached=True,
                                          policy=policy_with_escalation(), deadline=DEADLINE)
        assert escalation.escalated_to == "lead"
        assert escalation.deadline == DEADLINE
        actions = [e.action for e in workflow_log.entries_for_report(ORG, "r-1")]
        assert actions == [WorkflowAction.ESCALATED]

    def test_breach_escalation_deduplicated(self, coordinator, report, report_store):
        first = coordinator.escalate(ORG, "r-1", "u1", sla_breached=True,
                                     policy=policy_with_escalation(), deadline=DEADLINE)
        with pytest.raises(DuplicateEscalation) as exc_info:
            coordinator.escalate(ORG, "r-1", "lead", sla_breached=True,
                                 policy=policy_with_escalation(), deadline=DEADLINE)
        assert exc_info.value.escalation_id == first.id
        assert len(coordinator.escalations_for_report(ORG, "r-1")) == 1

    def test_new_deadline_escalates_again(self, coordinator, report):
        coordinator.escalate(ORG, "r-1", "u1", sla_breached=True,
                             escalate_to="lead", deadline=DEADLINE)
        coordinator.escalate(ORG, "r-1", "lead", sla_breached=True,
                             escalate_to="director", deadline=DEADLINE + timedelta(hours=24))
        assert len(coordinator.escalations_for_report(ORG, "r-1")) == 2

    def test_manual_duplicate_within_window(self, coordinator, report, clock):
        coordinator.escalate(ORG, "r-1", "u1", escalate_to="u2")
        clock.advance(seconds=30)
        with pytest.raises(DuplicateEscalation):
            coordinator.escalate(ORG, "r-1", "u2", escalate_to="u2")

    def test_manual_repeat_after_window(self, coordinator, report, report_store, clock):
        coordinator.escalate(ORG, "r-1", "u1", escalate_to="u2")
        coordinator.escalate(ORG, "r-1", "u2", escalate_to="u3")
        clock.advance(minutes=5)
        coordinator.escalate(ORG, "r-1", "u3", escalate_to="u2")
        assert len(coordinator.escalations_for_report(ORG, "r-1")) == 3
        assert report_store.get_report(ORG, "r-1", timeout=1).assigned_to == "u2"

    def test_breach_flag_without_deadline_uses_manual_window(self, coordinator, report, report_store, clock):
        first = coordinator.escalate(ORG, "r-1", "u1", sla_breached=True, escalate_to="u2")
        with pytest.raises(DuplicateEscalation) as exc_info:
            coordinator.escalate(ORG, "r-1", "u2", sla_breached=True, escalate_to="u2")
        assert exc_info.value.escalation_id == first.id

        coordinator.escalate(ORG, "r-1", "u2", escalate_to="u3")
        clock.advance(days=30)
        again = coordinator.escalate(ORG, "r-1", "u3", sla_breached=True, escalate_to="u2")

        assert again.sla_breached is True
        assert again.deadline is None
        assert report_store.get_report(ORG, "r-1", timeout=1).assigned_to == "u2"

    def test_stale_owner(self, coordinator, report, report_store):
        report_store.reassign(ORG, "r-1", "someone-else", expected_owner="u1", timeout=1)
        with pytest.raises(StalePrecondition):
            coordinator.escalate(ORG, "r-1", "u1", escalate_to="u2")
        assert coordinator.escalations_for_report(ORG, "r-1") == []

    def test_deleted_report(self, coordinator, report, report_store, workflow_log):
        report_store.delete_report("r-1")
        with pytest.raises(StalePrecondition):
            coordinator.escalate(ORG, "r-1", "u1", escalate_to="u2")
        assert workflow_log.entries_for_report(ORG, "r-1") == []

    def test_missing_report(self, coordinator):
        with pytest.raises(ReportNotFound):
            coordinator.escalate(ORG, "missing", None, escalate_to="u2")

    def test_other_organization(self, coordinator, report):
        with pytest.raises(ReportNotFound):
            coordinator.escalate(OTHER_ORG, "r-1", "u1", escalate_to="u2")

    def test_failed_reassign_releases_claim(self, storage, workflow_log, clock, report_store, report):
        class TimingOutStore(InMemoryReportStore):
            def __init__(self, inner):
                super().__init__()
                self.inner = inner
                self.fail = True

            def get_report(self, organization_id, report_id, timeout):
                return self.inner.get_report(organization_id, report_id, timeout)

            def reassign(self, organization_id, report_id, new_owner, expected_owner, timeout):
                if self.fail:
                    raise UpstreamTimeout("report store timed out")
                return self.inner.reassign(organization_id, report_id, new_owner, expected_owner, timeout)

        flaky = TimingOutStore(report_store)
        coordinator = EscalationCoordinator(storage, flaky, workflow_log, clock=clock)

        with pytest.raises(UpstreamTimeout):
            coordinator.escalate(ORG, "r-1", "u1", escalate_to="u2")
        assert workflow_log.entries_for_report(ORG, "r-1") == []

        flaky.fail = False
        escalation = coordinator.escalate(ORG, "r-1", "u1", escalate_to="u2")
        assert escalation.escalated_to == "u2"


class TestConcurrency:
    """Test concurrent escalations of the same report"""

    def test_concurrent_breach_escalation_applies_once(self, coordinator, report, workflow_log):
        outcomes = []
        barrier = threading.Barrier(8)

        def run():
            barrier.wait()
            try:
                coordinator.escalate(ORG, "r-1", "u1", sla_breached=True,
                                     escalate_to="lead", deadline=DEADLINE)
                outcomes.append("escalated")
            except DuplicateEscalation:
                outcomes.append("duplicate")

        threads = [threading.Thread(target=run) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert outcomes.count("escalated") == 1
        assert outcomes.count("duplicate") == 7
        assert len(workflow_log.entries_for_report(ORG, "r-1", WorkflowAction.ESCALATED)) == 1
        assert len(coordinator.arena) == 0


class TestArena:

    def test_compare_and_set(self):
        arena = EscalationArena()
        assert arena.compare_and_set("r-1", None, "k1")
        assert not arena.compare_and_set("r-1", None, "k2")
        assert arena.last_handled("r-1") == "k1"

    def test_released_reports_are_forgotten(self):
        arena = EscalationArena()
        with arena.hold("r-1"):
            arena.compare_and_set("r-1", None, "k1")
            assert len(arena) == 1
        assert len(arena) == 0
        assert arena.last_handled("r-1") is None

    def test_escalations_leave_no_state(self, coordinator, report):
        coordinator.escalate(ORG, "r-1", "u1", escalate_to="u2")
        assert len(coordinator.arena) == 0

    def test_dedupe_key(self):
        assert dedupe_key(ORG, "r-1", "u2", None) == "org-1:r-1:u2:manual"
        assert dedupe_key(ORG, "r-1", "u2", DEADLINE).endswith(DEADLINE.isoformat())
