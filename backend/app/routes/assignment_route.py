from typing import Optional

from aws_lambda_powertools import Logger
from fastapi import APIRouter, Depends, Header, Request
from models.assignment import AssignThreatModelsRequest
from services.assignment_service import AssignmentService

router = APIRouter(prefix="/api")

LOG = Logger(serialize_stacktrace=False)


def get_assignment_service(request: Request) -> AssignmentService:
    return request.app.state.assignment_service


@router.get("/projects/{project_id}/threat-models")
async def _project_threat_models(
    project_id: str,
    status: Optional[str] = None,
    service: AssignmentService = Depends(get_assignment_service),
):
    records = await service.get_threat_models_for_project(project_id, {"status": status})
    return {
        "success": True,
        "data": [record.model_dump(mode="json", by_alias=True) for record in records],
    }


@router.get("/threat-models/{threat_model_id}/projects")
async def _threat_model_projects(threat_model_id: str):
    LOG.warning(f"Deprecated endpoint called: GET /api/threat-models/{threat_model_id}/projects")
    return {
        "success": True,
        "data": [],
        "message": "This endpoint is deprecated. Please use the project-centric endpoints instead.",
    }


@router.post("/projects/{project_id}/threat-models")
async def _assign_threat_models(
    project_id: str,
    payload: AssignThreatModelsRequest,
    x_user: Optional[str] = Header(default=None),
    service: AssignmentService = Depends(get_assignment_service),
):
    assigned_by = x_user or "system"
    LOG.info(
        f"Starting assignment of {len(payload.threat_model_ids)} threat models to project {project_id}"
    )
    inserted = await service.assign_threat_models_to_project(
        project_id, payload.threat_model_ids, assigned_by
    )
    return {"success": True, "data": inserted}


@router.delete("/projects/{project_id}/threat-models/{threat_model_id}")
async def _remove_threat_model(
    project_id: str,
    threat_model_id: str,
    service: AssignmentService = Depends(get_assignment_service),
):
    removed = await service.remove_threat_model_from_project(project_id, threat_model_id)
    return {"success": True, "removed": removed}


@router.post("/projects/{project_id}/clear-cache")
async def _clear_project_cache(
    project_id: str,
    service: AssignmentService = Depends(get_assignment_service),
):
    cleared = await service.clear_project_cache(project_id)
    return {"success": True, "cleared": cleared}
