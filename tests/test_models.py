"""
Test suite for workflow domain model

Tests urgency parsing, assignment targets, rule conditions and the
serialization of stored records.
"""

import pytest
from datetime import datetime, timezone

from case_workflow.errors import PolicyValidationError
from case_workflow.models import (
    AssignmentRule, AssignmentTarget, CaseEscalation, Report, RuleConditions,
    SLAPolicy, SLAState, TargetKind, Urgency, parse_timestamp
)


NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


class TestUrgency:
    """Test urgency parsing"""

    def test_names(self):
        assert Urgency.from_value("critical") == Urgency.CRITICAL
        assert Urgency.from_value(" High ") == Urgency.HIGH

    def test_legacy_numeric_priority(self):
        """Test 1=low through 4=critical, as int or digit string"""
        assert Urgency.from_value(1) == Urgency.LOW
        assert Urgency.from_value(4) == Urgency.CRITICAL
        assert Urgency.from_value("2") == Urgency.MEDIUM

    @pytest.mark.parametrize("value", ["urgent", 0, 5, True, None])
    def test_invalid(self, value):
        with pytest.raises(ValueError):
            Urgency.from_value(value)

    def test_policy_field(self):
        assert Urgency.MEDIUM.policy_field == "medium_response_time"

    def test_sla_state_severity_is_ordered(self):
        assert SLAState.OK.severity < SLAState.WARNING.severity < SLAState.BREACHED.severity


class TestParseTimestamp:

    def test_z_suffix(self):
        assert parse_timestamp("2024-01-01T00:00:00Z") == NOW

    def test_naive_is_utc(self):
        assert parse_timestamp("2024-01-01T00:00:00") == NOW

    def test_empty(self):
        assert parse_timestamp(None) is None
        assert parse_timestamp("") is None


class TestAssignmentTarget:
    """Test the user / team / none variant"""

    def test_constructors(self):
        assert AssignmentTarget.user("u1").kind == TargetKind.USER
        assert AssignmentTarget.team("legal").target_id == "legal"
        assert not AssignmentTarget.none().is_assignable

    def test_both_user_and_team_rejected(self):
        with pytest.raises(PolicyValidationError):
            AssignmentTarget.from_fields(assign_to_user_id="u1", assign_to_team="legal")

    def test_from_fields(self):
        assert AssignmentTarget.from_fields(assign_to_user_id="u1") == AssignmentTarget.user("u1")
        assert AssignmentTarget.from_fields(assign_to_team="legal") == AssignmentTarget.team("legal")
        assert AssignmentTarget.from_fields() == AssignmentTarget.none()

    def test_missing_id_rejected(self):
        with pytest.raises(PolicyValidationError):
            AssignmentTarget(TargetKind.USER)
        with pytest.raises(PolicyValidationError):
            AssignmentTarget(TargetKind.NONE, "u1")


class TestRuleConditions:
    """Test rule condition normalization"""

    def test_keywords_trimmed(self):
        conditions = RuleConditions(keywords=[" fraud ", "", "bribe"])
        assert conditions.keywords == ["fraud", "bribe"]

    def test_comma_separated_keywords(self):
        assert RuleConditions(keywords="fraud, bribe").keywords == ["fraud", "bribe"]

    def test_urgency_normalized(self):
        assert RuleConditions(urgency="HIGH").urgency == "high"
        assert RuleConditions(urgency="Any").urgency == "any"

    def test_unknown_urgency_rejected(self):
        with pytest.raises(PolicyValidationError):
            RuleConditions(urgency="urgent")


class TestRecords:
    """Test serialization of stored records"""

    def test_rule_round_trip(self):
        rule = AssignmentRule(
            id="rule-1", created_at=NOW, updated_at=NOW,
            organization_id="org-1", name="Fraud", priority=1,
            conditions=RuleConditions(category="fraud", keywords=["invoice"]),
            target=AssignmentTarget.team("finance"), sequence=3
        )
        restored = AssignmentRule.from_dict(rule.to_dict())
        assert restored == rule

    def test_rule_from_two_column_row(self):
        data = {
            "id": "rule-1", "created_at": NOW.isoformat(), "updated_at": NOW.isoformat(),
            "organization_id": "org-1", "name": "Legacy", "priority": 2,
            "conditions": {"urgency": "any"}, "assign_to_user_id": "u9"
        }
        rule = AssignmentRule.from_dict(data)
        assert rule.target == AssignmentTarget.user("u9")
        assert rule.enabled is True

    def test_policy_defaults(self):
        policy = SLAPolicy(id="p", created_at=NOW, updated_at=NOW, organization_id="org-1", name="Standard")
        assert policy.tiers() == [24, 48, 120, 240]
        assert policy.hours_for(Urgency.HIGH) == 48

    def test_report_from_upstream_row(self):
        """Test upstream column names are accepted"""
        report = Report.from_dict({
            "id": "r-1", "organization_id": "org-1", "priority": 4,
            "created_at": "2024-01-01T00:00:00Z", "report_type": "fraud",
            "title": "Invoices", "description": None, "deleted_at": "2024-02-01T00:00:00Z"
        })
        assert report.urgency == Urgency.CRITICAL
        assert report.category == "fraud"
        assert report.description == ""
        assert report.deleted is True

    def test_searchable_text(self):
        report = Report(id="r", organization_id="o", urgency=Urgency.LOW, created_at=NOW,
                        title="Title", description="", incident_details="Details")
        assert report.searchable_text == "Title Details"

    def test_escalation_round_trip(self):
        escalation = CaseEscalation(
            id="e-1", created_at=NOW, updated_at=NOW, organization_id="org-1",
            report_id="r-1", escalated_to="u2", escalated_from="u1",
            reason="SLA breached", sla_breached=True, deadline=NOW
        )
        assert CaseEscalation.from_dict(escalation.to_dict()) == escalation
