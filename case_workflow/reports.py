"""
Report Store Module

The report-management service owns reports. The engine reads a report's
urgency, category and owner through a ReportStore and asks it to change the
owner. Every call takes a timeout; a timeout surfaces as UpstreamTimeout and
any other transport failure or error status as UpstreamError.
"""

import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from .errors import InvalidReport, UpstreamError, UpstreamTimeout
from .models import Report


logger = logging.getLogger("case_workflow.reports")


class ReportStore(ABC):
    """Abstract interface to the report-management service"""

    @abstractmethod
    def get_report(self, organization_id: str, report_id: str, timeout: float) -> Optional[Report]:
        """Fetch a report, or None if it does not exist in the organization"""
        pass

    @abstractmethod
    def reassign(self, organization_id: str, report_id: str, new_owner: str,
                 expected_owner: Optional[str], timeout: float) -> bool:
        """
        Change the owner only if the current owner is still ``expected_owner``.

        Returns:
            True if the owner was changed, False if the precondition failed
        """
        pass

    @abstractmethod
    def set_sla_deadline(self, organization_id: str, report_id: str,
                         deadline: datetime, timeout: float) -> None:
        """Publish the computed SLA deadline on the report"""
        pass


class InMemoryReportStore(ReportStore):
    """Report store kept in process memory, for tests and local runs"""

    def __init__(self):
        self._reports: Dict[str, Report] = {}
        self._deadlines: Dict[str, datetime] = {}
        self._lock = threading.RLock()

    def add_report(self, report: Report) -> Report:
        with self._lock:
            self._reports[report.id] = report
        return report

    def delete_report(self, report_id: str) -> None:
        with self._lock:
            report = self._reports.get(report_id)
            if report:
                report.deleted = True

    def sla_deadline(self, report_id: str) -> Optional[datetime]:
        return self._deadlines.get(report_id)

    def _find(self, organization_id: str, report_id: str) -> Optional[Report]:
        report = self._reports.get(report_id)
        if not report or report.organization_id != organization_id:
            return None
        return report

    def get_report(self, organization_id: str, report_id: str, timeout: float) -> Optional[Report]:
        with self._lock:
            report = self._find(organization_id, report_id)
            if not report:
                return None
            return Report.from_dict(report.to_dict())

    def reassign(self, organization_id: str, report_id: str, new_owner: str,
                 expected_owner: Optional[str], timeout: float) -> bool:
        with self._lock:
            report = self._find(organization_id, report_id)
            if not report or report.deleted or report.assigned_to != expected_owner:
                return False
            report.assigned_to = new_owner
            return True

    def set_sla_deadline(self, organization_id: str, report_id: str,
                         deadline: datetime, timeout: float) -> None:
        with self._lock:
            if self._find(organization_id, report_id):
                self._deadlines[report_id] = deadline


class HttpReportStore(ReportStore):
    """
    Report store backed by a PostgREST-style ``/reports`` resource, as exposed
    by hosted Postgres platforms. Filters use the ``column=eq.value`` syntax.
    """

    def __init__(self, base_url: str, api_key: Optional[str] = None,
                 client: Optional[httpx.Client] = None):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self._client = client or httpx.Client()

    def _headers(self, prefer: Optional[str] = None) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["apikey"] = self.api_key
            headers["Authorization"] = f"Bearer {self.api_key}"
        if prefer:
            headers["Prefer"] = prefer
        return headers

    def _request(self, method: str, params: Dict[str, str], timeout: float,
                 json: Optional[Dict[str, Any]] = None, prefer: Optional[str] = None) -> Any:
        try:
            response = self._client.request(
                method,
                f"{self.base_url}/reports",
                params=params,
                json=json,
                headers=self._headers(prefer),
                timeout=timeout
            )
        except httpx.TimeoutException as e:
            logger.warning("Report store %s timed out after %ss: %s", method, timeout, e)
            raise UpstreamTimeout(f"Report store did not answer within {timeout}s") from e
        except httpx.TransportError as e:
            logger.warning("Report store %s failed: %s", method, e)
            raise UpstreamError(f"Report store unreachable: {e}") from e
        if response.is_error:
            logger.warning("Report store %s answered %s", method, response.status_code)
            raise UpstreamError(f"Report store answered {response.status_code}")
        if not response.content:
            return None
        return response.json()

    def get_report(self, organization_id: str, report_id: str, timeout: float) -> Optional[Report]:
        rows = self._request("GET", {
            "id": f"eq.{report_id}",
            "organization_id": f"eq.{organization_id}",
            "select": "*"
        }, timeout)
        if not rows:
            return None
        try:
            return Report.from_dict(rows[0])
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidReport(f"Report {report_id} has an unreadable row: {e}", report_id) from e

    def reassign(self, organization_id: str, report_id: str, new_owner: str,
                 expected_owner: Optional[str], timeout: float) -> bool:
        params = {
            "id": f"eq.{report_id}",
            "organization_id": f"eq.{organization_id}",
            "assigned_to": f"eq.{expected_owner}" if expected_owner else "is.null"
        }
        rows = self._request("PATCH", params, timeout, json={
            "assigned_to": new_owner,
            "assigned_at": datetime.now(timezone.utc).isoformat()
        }, prefer="return=representation")
        return bool(rows)

    def set_sla_deadline(self, organization_id: str, report_id: str,
                         deadline: datetime, timeout: float) -> None:
        self._request("PATCH", {
            "id": f"eq.{report_id}",
            "organization_id": f"eq.{organization_id}"
        }, timeout, json={"sla_deadline": deadline.isoformat()})

    def close(self) -> None:
        self._client.close()
