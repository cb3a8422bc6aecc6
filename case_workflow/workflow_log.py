"""
Workflow Log Module

Append-only, hash-chained ledger of every automated decision taken for a
report. Each organization has its own chain; entries are never updated or
deleted, and verify_integrity() detects tampering.
"""

import hashlib
import json
import threading
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Callable, Dict, List, Optional, Any

from .models import WorkflowAction, WorkflowLogEntry
from .storage import StorageInterface


# string | number | boolean | null | mapping | sequence
JSONValue = Any


def to_json_value(value: Any) -> JSONValue:
    """
    Convert a details value into the restricted JSON value domain.

    Datetimes, enums and Decimals are converted to strings; anything that is
    not a JSON scalar, mapping or sequence is rejected.
    """
    if value is None or isinstance(value, (str, bool, int, float)):
        return value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        result = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise TypeError(f"Log detail keys must be strings, got {type(key).__name__}")
            result[key] = to_json_value(item)
        return result
    if isinstance(value, (list, tuple)):
        return [to_json_value(item) for item in value]
    raise TypeError(f"Unsupported log detail value of type {type(value).__name__}")


def calculate_hash(entry: WorkflowLogEntry) -> str:
    """SHA-256 over every field except current_hash"""
    hash_data = {
        'id': entry.id,
        'created_at': entry.created_at.isoformat(),
        'organization_id': entry.organization_id,
        'report_id': entry.report_id,
        'action': entry.action.value,
        'details': entry.details,
        'sequence': entry.sequence,
        'previous_hash': entry.previous_hash
    }
    json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
    return hashlib.sha256(json_data.encode('utf-8')).hexdigest()


class WorkflowLog:
    """Organization-scoped, hash-chained workflow log"""

    def __init__(self, storage: StorageInterface, table_name: str = "workflow_logs",
                 clock: Optional[Callable[[], datetime]] = None,
                 heads_table: str = "workflow_log_heads"):
        self.storage = storage
        self.table_name = table_name
        self.heads_table = heads_table
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()

    def _entries(self, organization_id: str, filters: Optional[Dict[str, Any]] = None) -> List[WorkflowLogEntry]:
        query = {'organization_id': organization_id}
        if filters:
            query.update(filters)
        entries = [WorkflowLogEntry.from_dict(data) for data in self.storage.find(self.table_name, query)]
        entries.sort(key=lambda e: e.sequence)
        return entries

    def _head(self, organization_id: str) -> Dict[str, Any]:
        """Last sequence and hash of the organization's chain"""
        head = self.storage.load(self.heads_table, organization_id)
        if head:
            return head
        # Chains written before head rows existed
        existing = self._entries(organization_id)
        if not existing:
            return {'sequence': 0, 'current_hash': ""}
        return {'sequence': existing[-1].sequence, 'current_hash': existing[-1].current_hash}

    def append(self, organization_id: str, report_id: str, action: WorkflowAction,
               details: Optional[Dict[str, Any]] = None) -> WorkflowLogEntry:
        """
        Append an entry to the organization's chain.

        Args:
            organization_id: Owning organization
            report_id: Report the decision concerns
            action: Action from the fixed vocabulary
            details: Diagnostic context, restricted to JSON values

        Returns:
            The stored entry
        """
        if not isinstance(action, WorkflowAction):
            raise TypeError(f"Unknown workflow action: {action!r}")
        clean_details = to_json_value(details or {})

        with self._lock:
            head = self._head(organization_id)
            now = self.clock()

            entry = WorkflowLogEntry(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                organization_id=organization_id,
                report_id=report_id,
                action=action,
                details=clean_details,
                sequence=head['sequence'] + 1,
                previous_hash=head['current_hash']
            )
            entry.current_hash = calculate_hash(entry)

            with self.storage.atomic():
                if not self.storage.insert_if_absent(self.table_name, entry.id, entry.to_dict()):
                    raise RuntimeError(f"Workflow log entry id collision: {entry.id}")
                self.storage.save(self.heads_table, organization_id, {
                    'organization_id': organization_id,
                    'entry_id': entry.id,
                    'sequence': entry.sequence,
                    'current_hash': entry.current_hash
                })

            return entry

    def entries_for_report(self, organization_id: str, report_id: str,
                           action: Optional[WorkflowAction] = None) -> List[WorkflowLogEntry]:
        """Entries for one report in append order, optionally filtered by action"""
        filters = {'report_id': report_id}
        if action:
            filters['action'] = action.value
        return self._entries(organization_id, filters)

    def entries_for_organization(self, organization_id: str,
                                 limit: Optional[int] = None) -> List[WorkflowLogEntry]:
        entries = self._entries(organization_id)
        if limit:
            entries = entries[-limit:]
        return entries

    def verify_integrity(self, organization_id: str) -> Dict[str, Any]:
        """
        Verify the organization's chain.

        Returns:
            Dictionary with 'valid', 'total_entries', 'hash_errors' and 'chain_breaks'
        """
        result = {
            'valid': True,
            'total_entries': 0,
            'hash_errors': [],
            'chain_breaks': []
        }

        entries = self._entries(organization_id)
        result['total_entries'] = len(entries)

        previous_hash = ""
        for position, entry in enumerate(entries):
            expected = calculate_hash(entry)
            if entry.current_hash != expected:
                result['valid'] = False
                result['hash_errors'].append({
                    'entry_id': entry.id,
                    'position': position,
                    'expected_hash': expected,
                    'actual_hash': entry.current_hash
                })
            if entry.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'entry_id': entry.id,
                    'position': position,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': entry.previous_hash
                })
            previous_hash = entry.current_hash

        return result
