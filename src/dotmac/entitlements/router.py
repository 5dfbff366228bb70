"""
FastAPI endpoints over the entitlement service.

Thin wrapper: every route delegates to ``EntitlementsService``. Mount with
``app.include_router(router, prefix="/api/v1/entitlements")`` and override
``get_entitlements_service`` to inject a configured service.
"""

from contextlib import aclosing
from datetime import datetime

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel, ConfigDict

from .audit.models import AuditFilter, AuditRecord, EntityType
from .bulk.models import BulkPermissionUpdate, BulkUpdateResult
from .exceptions import EntitlementsError, EntityNotFoundError, StorageError, ValidationError
from .permissions.models import (
    PermissionCheck,
    PermissionConflict,
    ResolutionResult,
    UserPermissionSummary,
)
from .service import EntitlementsService, create_entitlements_service

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["Entitlements"])

_service: EntitlementsService | None = None


def get_entitlements_service() -> EntitlementsService:
    """Default service dependency, built from settings on first use."""
    global _service
    if _service is None:
        _service = create_entitlements_service()
    return _service


def get_actor_id(x_actor_id: str = Header(..., alias="X-Actor-ID")) -> str:
    """Identity of the administrator performing a mutation."""
    actor = x_actor_id.strip()
    if not actor:
        raise HTTPException(status_code=422, detail="X-Actor-ID header must not be empty")
    return actor


def _http_error(exc: EntitlementsError) -> HTTPException:
    if isinstance(exc, EntityNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, StorageError):
        logger.error("Entitlement storage unavailable", error=str(exc))
        return HTTPException(status_code=503, detail="Entitlement storage unavailable")
    return HTTPException(status_code=500, detail=str(exc))


class ModuleValidationResponse(BaseModel):
    """Module graph validation outcome."""

    model_config = ConfigDict()

    valid: bool
    conflicts: list[PermissionConflict]


class AuditRecordList(BaseModel):
    """Newest-first page of audit records."""

    model_config = ConfigDict()

    records: list[AuditRecord]
    count: int


@router.get("/users/{user_id}/effective-permissions", response_model=ResolutionResult)
async def get_effective_permissions(
    user_id: str,
    service: EntitlementsService = Depends(get_entitlements_service),
) -> ResolutionResult:
    """Effective permissions and conflicts for every module of a user."""
    try:
        return await service.resolve_effective_permissions(user_id)
    except EntitlementsError as e:
        raise _http_error(e) from e


@router.get("/users/{user_id}/permissions/{module_id}/{action}", response_model=PermissionCheck)
async def check_permission(
    user_id: str,
    module_id: str,
    action: str,
    service: EntitlementsService = Depends(get_entitlements_service),
) -> PermissionCheck:
    try:
        return await service.check_permission(user_id, module_id, action)
    except EntitlementsError as e:
        raise _http_error(e) from e


@router.get("/users/{user_id}/permission-summary", response_model=UserPermissionSummary)
async def get_permission_summary(
    user_id: str,
    service: EntitlementsService = Depends(get_entitlements_service),
) -> UserPermissionSummary:
    """Role, plan and effective actions per module."""
    try:
        return await service.get_permission_summary(user_id)
    except EntitlementsError as e:
        raise _http_error(e) from e


@router.get("/modules/validation", response_model=ModuleValidationResponse)
async def validate_modules(
    service: EntitlementsService = Depends(get_entitlements_service),
) -> ModuleValidationResponse:
    try:
        conflicts = await service.validate_module_graph()
    except EntitlementsError as e:
        raise _http_error(e) from e
    return ModuleValidationResponse(valid=not conflicts, conflicts=conflicts)


@router.post("/bulk-updates", response_model=list[BulkUpdateResult])
async def apply_bulk_update(
    update: BulkPermissionUpdate,
    actor_id: str = Depends(get_actor_id),
    service: EntitlementsService = Depends(get_entitlements_service),
) -> list[BulkUpdateResult]:
    """Apply add/remove/replace updates to roles or plans; one result per target."""
    try:
        return await service.apply_bulk_update(update, performed_by=actor_id)
    except EntitlementsError as e:
        raise _http_error(e) from e


@router.get("/audit-records", response_model=AuditRecordList)
async def list_audit_records(
    entity_type: EntityType | None = Query(None, description="Filter by entity type"),
    entity_id: str | None = Query(None, description="Filter by entity ID"),
    performed_by: str | None = Query(None, description="Filter by actor"),
    start_date: datetime | None = Query(None, description="Earliest timestamp"),
    end_date: datetime | None = Query(None, description="Latest timestamp"),
    limit: int = Query(50, ge=1, le=1000, description="Maximum records returned"),
    service: EntitlementsService = Depends(get_entitlements_service),
) -> AuditRecordList:
    """Audit records, newest first."""
    try:
        filters = AuditFilter(
            entity_type=entity_type,
            entity_id=entity_id,
            performed_by=performed_by,
            start_date=start_date,
            end_date=end_date,
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e

    records: list[AuditRecord] = []
    try:
        async with aclosing(service.query_audit_log(filters)) as stream:
            async for record in stream:
                records.append(record)
                if len(records) >= limit:
                    break
    except EntitlementsError as e:
        raise _http_error(e) from e
    return AuditRecordList(records=records, count=len(records))


__all__ = ["router", "get_entitlements_service", "get_actor_id"]
