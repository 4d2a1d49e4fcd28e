"""
FastAPI routes: notification templates.

    POST   /api/v1/templates                 — create
    GET    /api/v1/templates                 — paginated list with filters
    GET    /api/v1/templates/categories      — distinct categories
    GET    /api/v1/templates/variables       — variables used across templates
    GET    /api/v1/templates/{id}            — fetch one
    PUT    /api/v1/templates/{id}            — update
    DELETE /api/v1/templates/{id}            — delete (admin)
    POST   /api/v1/templates/{id}/apply      — render into a draft alert
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from backend.app.alerts.models import Actor
from backend.app.alerts.templates import validate_variables
from backend.app.api.deps import (
    ADMIN_ONLY,
    STAFF,
    AlertServices,
    get_services,
    require_roles,
)
from backend.app.api.schemas import TemplateApplyRequest, TemplateCreateRequest, TemplateUpdateRequest

router = APIRouter(prefix="/api/v1/templates", tags=["templates"])


@router.post("", status_code=201, summary="Create a template")
async def create_template(
    request: TemplateCreateRequest,
    actor: Actor = Depends(require_roles(*STAFF)),
    services: AlertServices = Depends(get_services),
):
    template = await services.templates.create(request.model_dump(exclude_unset=True), actor.id)
    return {"message": "Template created successfully.", "template": template.to_dict()}


@router.get("", summary="List templates")
async def list_templates(
    type: Optional[str] = Query(None),
    category: Optional[str] = Query(None),
    is_active: Optional[bool] = Query(None),
    search: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    sort_by: str = Query("created_at"),
    sort_dir: str = Query("desc", pattern="^(asc|desc)$"),
    actor: Actor = Depends(require_roles(*STAFF)),
    services: AlertServices = Depends(get_services),
):
    result = await services.templates.list(
        type=type,
        category=category,
        is_active=is_active,
        search=search,
        page=page,
        limit=limit,
        sort_by=sort_by,
        sort_dir=sort_dir,
    )
    return {
        "templates": [t.to_dict() for t in result["templates"]],
        "pagination": result["pagination"],
    }


@router.get("/categories", summary="Distinct template categories")
async def template_categories(
    actor: Actor = Depends(require_roles(*STAFF)),
    services: AlertServices = Depends(get_services),
):
    return {"categories": await services.templates.categories()}


@router.get("/variables", summary="Variables used across templates")
async def template_variables(
    actor: Actor = Depends(require_roles(*STAFF)),
    services: AlertServices = Depends(get_services),
):
    return {"variables": await services.templates.variables()}


@router.get("/{template_id}", summary="Get a template")
async def get_template(
    template_id: int,
    actor: Actor = Depends(require_roles(*STAFF)),
    services: AlertServices = Depends(get_services),
):
    template = await services.templates.get(template_id)
    return {"template": template.to_dict()}


@router.put("/{template_id}", summary="Update a template")
async def update_template(
    template_id: int,
    request: TemplateUpdateRequest,
    actor: Actor = Depends(require_roles(*STAFF)),
    services: AlertServices = Depends(get_services),
):
    template = await services.templates.update(
        template_id, request.model_dump(exclude_unset=True), actor.id,
    )
    return {"message": "Template updated successfully.", "template": template.to_dict()}


@router.delete("/{template_id}", summary="Delete a template")
async def delete_template(
    template_id: int,
    actor: Actor = Depends(require_roles(*ADMIN_ONLY)),
    services: AlertServices = Depends(get_services),
):
    await services.templates.delete(template_id)
    return {"message": "Template deleted successfully.", "template_id": template_id}


@router.post("/{template_id}/apply", status_code=201, summary="Create a draft alert from a template")
async def apply_template(
    template_id: int,
    request: TemplateApplyRequest,
    actor: Actor = Depends(require_roles(*STAFF)),
    services: AlertServices = Depends(get_services),
):
    template = await services.templates.get(template_id)
    alert = await services.templates.apply(
        template_id,
        request.variables,
        request.targeting,
        actor.id,
        language=request.language,
    )
    return {
        "message": "Draft alert created from template.",
        "alert": alert.to_dict(),
        "variables": validate_variables(template, request.variables),
    }
