"""
FastAPI REST API Module

HTTP front of the workflow engine: the single workflow-engine endpoint the
dashboard calls, a periodic SLA sweep trigger, and read-only views of rules,
SLA policies and per-report history. Runs on port 8095.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import Body, Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from .config import get_config
from .engine import WorkflowEngine, build_engine
from .schemas import WorkflowEngineResponse


ERROR_STATUS = {
    "invalid_request": 400,
    "report_not_found": 404,
    "no_default_policy": 409,
    "invalid_configuration": 409,
    "no_escalation_target": 409,
    "stale_precondition": 409,
    "upstream_error": 502,
    "invalid_report": 502,
    "upstream_timeout": 503,
    "internal_error": 500,
}


# Create FastAPI app
app = FastAPI(
    title="Case Workflow Engine API",
    description="Rule-based assignment, SLA tracking and escalation for whistleblowing reports",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


_engine: Optional[WorkflowEngine] = None


# Dependency to get the workflow engine
def get_engine() -> WorkflowEngine:
    global _engine
    if _engine is None:
        _engine = build_engine(get_config())
    return _engine


def status_for(response: WorkflowEngineResponse) -> int:
    if response.success:
        return 200
    return ERROR_STATUS.get(response.error_code, 500)


@app.get("/health")
def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}


@app.post("/workflow-engine")
def workflow_engine(
    payload: Any = Body(None),
    engine: WorkflowEngine = Depends(get_engine)
):
    """Run one engine action: auto_assign, calculate_sla, escalate or check_sla"""
    response = engine.handle(payload if isinstance(payload, dict) else {})
    return JSONResponse(status_code=status_for(response), content=response.to_payload())


@app.post("/workflow-engine/sweep/{organization_id}")
def sweep_organization(
    organization_id: str,
    engine: WorkflowEngine = Depends(get_engine)
):
    """Check every tracked SLA deadline of an organization"""
    results = engine.sweep(organization_id)
    return {
        "organization_id": organization_id,
        "checked": len(results),
        "breached": sum(1 for r in results if r.sla_state == "breached"),
        "escalated": sum(1 for r in results if r.escalated),
        "results": [r.model_dump() for r in results]
    }


@app.get("/organizations/{organization_id}/rules")
def list_rules(
    organization_id: str,
    engine: WorkflowEngine = Depends(get_engine)
):
    """Assignment rules in evaluation order"""
    return {"rules": engine.rules.as_dashboard_rows(organization_id)}


@app.get("/organizations/{organization_id}/sla-policies")
def list_sla_policies(
    organization_id: str,
    engine: WorkflowEngine = Depends(get_engine)
):
    return {"policies": [p.to_dict() for p in engine.policies.list_policies(organization_id)]}


@app.get("/organizations/{organization_id}/reports/{report_id}/history")
def report_history(
    organization_id: str,
    report_id: str,
    engine: WorkflowEngine = Depends(get_engine)
) -> Dict[str, Any]:
    """Workflow log entries and escalations of one report"""
    history = engine.history(organization_id, report_id)
    if not history['logs'] and not history['escalations']:
        raise HTTPException(status_code=404, detail="No workflow history for report")
    return history


@app.get("/organizations/{organization_id}/workflow-log/verify")
def verify_workflow_log(
    organization_id: str,
    engine: WorkflowEngine = Depends(get_engine)
):
    """Verify the hash chain of an organization's workflow log"""
    return engine.workflow_log.verify_integrity(organization_id)


def run_server(host: str = "0.0.0.0", port: int = 8095, debug: bool = False):
    """Run the FastAPI server"""
    uvicorn.run(
        "case_workflow.api:app",
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )
