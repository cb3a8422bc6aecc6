"""
Workflow Domain Model

Assignment rules, SLA policies, escalations and workflow log entries for
whistleblowing case management. Every record is owned by exactly one
organization and carries its organization_id.
"""

from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Union
from enum import Enum

from .storage import StorageRecord
from .errors import PolicyValidationError


URGENCY_ANY = "any"


def parse_timestamp(value: Union[str, datetime, None]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp, treating naive values as UTC"""
    if value is None or value == "":
        return None
    if isinstance(value, str):
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


class Urgency(Enum):
    """Report urgency tiers"""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @classmethod
    def from_value(cls, value: Union[str, int, 'Urgency']) -> 'Urgency':
        """
        Accept an urgency name or the legacy numeric report priority
        (1=low, 2=medium, 3=high, 4=critical).
        """
        if isinstance(value, Urgency):
            return value
        if isinstance(value, bool):
            raise ValueError(f"Invalid urgency: {value!r}")
        if isinstance(value, int):
            if value not in _PRIORITY_TO_URGENCY:
                raise ValueError(f"Invalid report priority: {value}")
            return _PRIORITY_TO_URGENCY[value]
        if isinstance(value, str):
            normalized = value.strip().lower()
            if normalized.isdigit():
                return cls.from_value(int(normalized))
            return cls(normalized)
        raise ValueError(f"Invalid urgency: {value!r}")

    @property
    def policy_field(self) -> str:
        """Name of the SLAPolicy field holding this tier's response time"""
        return f"{self.value}_response_time"


_PRIORITY_TO_URGENCY = {
    1: Urgency.LOW,
    2: Urgency.MEDIUM,
    3: Urgency.HIGH,
    4: Urgency.CRITICAL,
}


class WorkflowAction(Enum):
    """Fixed vocabulary of workflow log actions"""
    AUTO_ASSIGNED = "auto_assigned"
    SLA_CALCULATED = "sla_calculated"
    SLA_WARNING = "sla_warning"
    SLA_BREACHED = "sla_breached"
    ESCALATED = "escalated"
    MANUALLY_REASSIGNED = "manually_reassigned"
    RULE_MATCHED = "rule_matched"


class SLAState(Enum):
    """Breach classification of an SLA deadline"""
    OK = "ok"
    WARNING = "warning"
    BREACHED = "breached"

    @property
    def severity(self) -> int:
        return _SLA_SEVERITY[self]


_SLA_SEVERITY = {SLAState.OK: 0, SLAState.WARNING: 1, SLAState.BREACHED: 2}


class TargetKind(Enum):
    """Kind of assignment target"""
    USER = "user"
    TEAM = "team"
    NONE = "none"


@dataclass(frozen=True)
class AssignmentTarget:
    """
    Who a rule assigns to: a single user, a team, or nobody.

    A rule can never carry both a user and a team; the variant makes that
    unrepresentable.
    """
    kind: TargetKind
    target_id: Optional[str] = None

    def __post_init__(self):
        if self.kind == TargetKind.NONE:
            if self.target_id is not None:
                raise PolicyValidationError("A 'none' assignment target cannot carry an id")
        elif not self.target_id:
            raise PolicyValidationError(f"A {self.kind.value} assignment target requires an id")

    @classmethod
    def user(cls, user_id: str) -> 'AssignmentTarget':
        return cls(TargetKind.USER, user_id)

    @classmethod
    def team(cls, team: str) -> 'AssignmentTarget':
        return cls(TargetKind.TEAM, team)

    @classmethod
    def none(cls) -> 'AssignmentTarget':
        return cls(TargetKind.NONE)

    @classmethod
    def from_fields(cls, assign_to_user_id: Optional[str] = None,
                    assign_to_team: Optional[str] = None) -> 'AssignmentTarget':
        """Build a target from the two-column row representation"""
        if assign_to_user_id and assign_to_team:
            raise PolicyValidationError("A rule cannot assign to both a user and a team")
        if assign_to_user_id:
            return cls.user(assign_to_user_id)
        if assign_to_team:
            return cls.team(assign_to_team)
        return cls.none()

    @property
    def is_assignable(self) -> bool:
        return self.kind != TargetKind.NONE

    def to_dict(self) -> Dict[str, Any]:
        return {'kind': self.kind.value, 'id': self.target_id}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AssignmentTarget':
        return cls(TargetKind(data['kind']), data.get('id'))


def normalize_keywords(keywords: Union[str, List[str], None]) -> List[str]:
    """Trim keywords and drop empties; accepts a comma-separated string"""
    if not keywords:
        return []
    if isinstance(keywords, str):
        keywords = keywords.split(",")
    return [k.strip() for k in keywords if k and k.strip()]


@dataclass
class RuleConditions:
    """Match predicate of an assignment rule; unset fields are wildcards"""
    category: Optional[str] = None
    urgency: Optional[str] = None  # urgency value or "any"
    keywords: List[str] = field(default_factory=list)
    department: Optional[str] = None

    def __post_init__(self):
        self.keywords = normalize_keywords(self.keywords)
        if self.urgency is not None:
            urgency = self.urgency.strip().lower()
            if urgency != URGENCY_ANY:
                try:
                    Urgency(urgency)
                except ValueError:
                    raise PolicyValidationError(f"Unknown urgency condition: {self.urgency}") from None
            self.urgency = urgency

    def to_dict(self) -> Dict[str, Any]:
        return {
            'category': self.category,
            'urgency': self.urgency,
            'keywords': list(self.keywords),
            'department': self.department
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'RuleConditions':
        data = data or {}
        return cls(
            category=data.get('category'),
            urgency=data.get('urgency'),
            keywords=data.get('keywords') or [],
            department=data.get('department')
        )


@dataclass
class AssignmentRule(StorageRecord):
    """Organization-scoped rule that routes matching reports to an owner"""
    organization_id: str
    name: str
    priority: int
    conditions: RuleConditions = field(default_factory=RuleConditions)
    target: AssignmentTarget = field(default_factory=AssignmentTarget.none)
    enabled: bool = True
    sequence: int = 0  # creation order, breaks priority ties

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'organization_id': self.organization_id,
            'name': self.name,
            'priority': self.priority,
            'conditions': self.conditions.to_dict(),
            'target': self.target.to_dict(),
            'enabled': self.enabled,
            'sequence': self.sequence
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AssignmentRule':
        return cls(
            id=data['id'],
            created_at=parse_timestamp(data['created_at']),
            updated_at=parse_timestamp(data['updated_at']),
            organization_id=data['organization_id'],
            name=data['name'],
            priority=data['priority'],
            conditions=RuleConditions.from_dict(data.get('conditions')),
            target=AssignmentTarget.from_dict(data['target']) if data.get('target')
            else AssignmentTarget.from_fields(data.get('assign_to_user_id'), data.get('assign_to_team')),
            enabled=data.get('enabled', True),
            sequence=data.get('sequence', 0)
        )


@dataclass
class SLAPolicy(StorageRecord):
    """Response-time ceilings (hours) per urgency tier for an organization"""
    organization_id: str
    name: str
    critical_response_time: float = 24
    high_response_time: float = 48
    medium_response_time: float = 120
    low_response_time: float = 240
    escalate_after_breach: bool = False
    escalate_to_user_id: Optional[str] = None
    is_default: bool = False

    def hours_for(self, urgency: Urgency) -> float:
        return getattr(self, urgency.policy_field)

    def tiers(self) -> List[float]:
        """Ceilings ordered from critical to low"""
        return [self.hours_for(u) for u in (Urgency.CRITICAL, Urgency.HIGH, Urgency.MEDIUM, Urgency.LOW)]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SLAPolicy':
        data = dict(data)
        data['created_at'] = parse_timestamp(data['created_at'])
        data['updated_at'] = parse_timestamp(data['updated_at'])
        return cls(**data)


@dataclass
class Report:
    """
    Report attributes consumed by the engine. Owned by the report-management
    service; the engine only reads it and requests ownership changes.
    """
    id: str
    organization_id: str
    urgency: Urgency
    created_at: datetime
    category: Optional[str] = None
    department: Optional[str] = None
    title: str = ""
    description: str = ""
    incident_details: str = ""
    assigned_to: Optional[str] = None
    deleted: bool = False

    @property
    def searchable_text(self) -> str:
        return " ".join(part for part in (self.title, self.description, self.incident_details) if part)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'organization_id': self.organization_id,
            'urgency': self.urgency.value,
            'created_at': self.created_at.isoformat(),
            'category': self.category,
            'department': self.department,
            'title': self.title,
            'description': self.description,
            'incident_details': self.incident_details,
            'assigned_to': self.assigned_to,
            'deleted': self.deleted
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Report':
        """Build from a report row; accepts upstream column names (report_type, priority)"""
        urgency = data.get('urgency')
        if urgency is None:
            urgency = data.get('priority')
        return cls(
            id=data['id'],
            organization_id=data['organization_id'],
            urgency=Urgency.from_value(urgency),
            created_at=parse_timestamp(data['created_at']),
            category=data.get('category', data.get('report_type')),
            department=data.get('department'),
            title=data.get('title') or "",
            description=data.get('description') or "",
            incident_details=data.get('incident_details') or "",
            assigned_to=data.get('assigned_to'),
            deleted=bool(data.get('deleted', False) or data.get('deleted_at'))
        )


@dataclass
class SLADeadline(StorageRecord):
    """The active SLA deadline of a report; its id is the report id"""
    organization_id: str
    report_id: str
    policy_id: str
    urgency: Urgency
    hours: float
    started_at: datetime
    deadline: datetime

    @property
    def key(self) -> str:
        """Identifies this particular deadline for state tracking and dedupe"""
        return f"{self.report_id}:{self.deadline.isoformat()}"

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['urgency'] = self.urgency.value
        result['started_at'] = self.started_at.isoformat()
        result['deadline'] = self.deadline.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SLADeadline':
        data = dict(data)
        data['urgency'] = Urgency(data['urgency'])
        for key in ('created_at', 'updated_at', 'started_at', 'deadline'):
            data[key] = parse_timestamp(data[key])
        return cls(**data)


@dataclass
class CaseEscalation(StorageRecord):
    """Immutable record of an ownership escalation"""
    organization_id: str
    report_id: str
    escalated_to: str
    escalated_from: Optional[str] = None
    reason: Optional[str] = None
    sla_breached: bool = False
    deadline: Optional[datetime] = None  # the SLA deadline that triggered it, if any

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['deadline'] = self.deadline.isoformat() if self.deadline else None
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CaseEscalation':
        data = dict(data)
        for key in ('created_at', 'updated_at', 'deadline'):
            data[key] = parse_timestamp(data.get(key))
        return cls(**data)


@dataclass
class WorkflowLogEntry(StorageRecord):
    """Write-once entry of the workflow log"""
    organization_id: str
    report_id: str
    action: WorkflowAction
    details: Dict[str, Any]
    sequence: int
    previous_hash: str = ""
    current_hash: str = ""

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['action'] = self.action.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkflowLogEntry':
        data = dict(data)
        data['action'] = WorkflowAction(data['action'])
        data['created_at'] = parse_timestamp(data['created_at'])
        data['updated_at'] = parse_timestamp(data['updated_at'])
        return cls(**data)
