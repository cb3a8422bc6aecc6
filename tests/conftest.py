"""
Shared fixtures for the case workflow test suite
"""

import pytest
from datetime import datetime, timezone, timedelta

from case_workflow.config import WorkflowConfig
from case_workflow.engine import WorkflowEngine
from case_workflow.models import Report, Urgency
from case_workflow.notifications import NotificationDispatcher
from case_workflow.reports import InMemoryReportStore
from case_workflow.storage import InMemoryStorage


ORG = "org-1"
OTHER_ORG = "org-2"
T0 = datetime(2024, 1, 1, 0, 0, tzinfo=timezone.utc)


class FixedClock:
    """Controllable clock; call it like datetime.now"""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingNotifier(NotificationDispatcher):
    """Keeps every notification in memory"""

    def __init__(self, delivered: bool = True):
        self.sent = []
        self.delivered = delivered

    def notify(self, notification) -> bool:
        self.sent.append(notification)
        return self.delivered


def make_report(report_id="r-1", organization_id=ORG, urgency=Urgency.HIGH, created_at=T0, **fields):
    return Report(
        id=report_id,
        organization_id=organization_id,
        urgency=urgency,
        created_at=created_at,
        **fields
    )


@pytest.fixture
def clock():
    """Clock fixed at 2024-01-01T00:00Z"""
    return FixedClock()


@pytest.fixture
def storage():
    """Create in-memory storage for testing"""
    return InMemoryStorage()


@pytest.fixture
def report_store():
    return InMemoryReportStore()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def config():
    """Configuration with explicit values, independent of the environment"""
    return WorkflowConfig(
        database_url="memory://",
        report_store_url="",
        notification_webhook_url="",
        sla_warning_fraction=0.8,
        enforce_sla_tier_order=False,
        manual_escalation_dedupe_seconds=60,
        upstream_timeout_seconds=5.0
    )


@pytest.fixture
def engine(storage, report_store, config, notifier, clock):
    """Create workflow engine for testing"""
    return WorkflowEngine(storage, report_store, config=config, notifier=notifier, clock=clock)
