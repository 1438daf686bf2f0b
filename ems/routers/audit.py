from typing import Annotated, Any
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel
import uuid
from datetime import datetime, timezone

from ems.database import get_db
from ems.auth import dependencies
from ems.core.exceptions import ValidationFailed
from ems.core.permissions import Action, Resource
from ems.core.rate_limit import edge_protection
from ems.models.user import User
from ems.core.responses import PaginatedResponse, Pagination
from ems.services.audit_service import (
    AuditFilters,
    AuditRow,
    AuditService,
    AuditTrail,
    get_audit_trail,
    render_audit_csv,
)

router = APIRouter(dependencies=[edge_protection("default")])

MAX_PAGE = 100_000


class AuditActor(BaseModel):
    id: uuid.UUID | None
    name: str | None
    email: str | None


class AuditLogResponse(BaseModel):
    id: uuid.UUID
    action: str
    resource: str
    resource_id: str | None
    details: dict[str, Any] | None
    ip_address: str | None
    user_agent: str | None
    created_at: datetime
    user: AuditActor

    @classmethod
    def from_row(cls, row: AuditRow) -> "AuditLogResponse":
        log = row.log
        return cls(
            id=log.id,
            action=log.action,
            resource=log.resource,
            resource_id=log.resource_id,
            details=row.details,
            ip_address=log.ip_address,
            user_agent=log.user_agent,
            created_at=log.created_at,
            user=AuditActor(id=log.user_id, name=row.user_name, email=row.user_email),
        )


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value.astimezone(timezone.utc)


def audit_filters(
    action: str | None = Query(None),
    resource: str | None = Query(None),
    user_id: uuid.UUID | None = Query(None),
    start_date: datetime | None = Query(None),
    end_date: datetime | None = Query(None),
    search: str | None = Query(None, max_length=200),
) -> AuditFilters:
    start, end = _as_utc(start_date), _as_utc(end_date)
    if start and end and start > end:
        raise ValidationFailed("start_date cannot be after end_date")
    return AuditFilters(
        action=action,
        resource=resource,
        user_id=user_id,
        start_date=start,
        end_date=end,
        search=search,
    )


@router.get("/logs", response_model=PaginatedResponse[list[AuditLogResponse]])
async def get_audit_logs(
    current_user: Annotated[User, Depends(dependencies.require_permission(Resource.AUDIT_LOG, Action.VIEW))],
    db: Annotated[AsyncSession, Depends(get_db)],
    filters: Annotated[AuditFilters, Depends(audit_filters)],
    page: int = Query(1, ge=1, le=MAX_PAGE),
    limit: int = Query(50, ge=1, le=200),
):
    """Audit logs, newest first (Admin only)."""
    rows, total = await AuditService.list_logs(db, filters, page=page, limit=limit)
    return PaginatedResponse(
        data=[AuditLogResponse.from_row(row) for row in rows],
        pagination=Pagination.build(page=page, limit=limit, total=total),
    )


@router.get("/logs/export")
async def export_audit_logs(
    request: Request,
    current_user: Annotated[User, Depends(dependencies.require_permission(Resource.AUDIT_LOG, Action.EXPORT))],
    db: Annotated[AsyncSession, Depends(get_db)],
    trail: Annotated[AuditTrail, Depends(get_audit_trail)],
    filters: Annotated[AuditFilters, Depends(audit_filters)],
):
    """Every matching audit log as CSV (Admin only)."""
    rows = await AuditService.export_logs(db, filters)
    csv_content = render_audit_csv(rows)

    AuditService.log_data_export(trail, current_user.id, "audit_logs", len(rows), request)

    filename = f"audit-logs-{datetime.now(timezone.utc).date().isoformat()}.csv"
    return Response(
        content=csv_content,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
