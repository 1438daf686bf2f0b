import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import Request
from sqlalchemy import Select, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ems.models.audit import AuditLog
from ems.models.employee import Employee
from ems.models.enums import AuditAction, AuditResource
from ems.models.user import User

# Operational channel for audit write failures.
audit_logger = logging.getLogger("ems.audit")


@dataclass
class AuditEntry:
    user_id: uuid.UUID | None
    action: str
    resource: str
    resource_id: str | None = None
    details: dict[str, Any] | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_model(self) -> AuditLog:
        return AuditLog(
            user_id=self.user_id,
            action=self.action,
            resource=self.resource,
            resource_id=self.resource_id,
            details=json.dumps(self.details, default=str) if self.details is not None else None,
            ip_address=self.ip_address,
            user_agent=self.user_agent,
            created_at=self.created_at,
        )


class AuditTrail:
    """Fire-and-forget audit writer.

    ``record`` never blocks and never raises: entries go onto a queue that a
    single background task drains, writing each one in its own session. Write
    failures are reported on the ``ems.audit`` logger and counted in
    ``failures``; the request that produced the entry has already answered.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], *, max_queue: int = 1000) -> None:
        self._session_factory = session_factory
        self._queue: asyncio.Queue[AuditEntry] = asyncio.Queue(maxsize=max_queue)
        self._worker: asyncio.Task | None = None
        self.written = 0
        self.failures = 0
        self.dropped = 0

    def record(self, entry: AuditEntry) -> None:
        self._ensure_worker()
        try:
            self._queue.put_nowait(entry)
        except asyncio.QueueFull:
            self.dropped += 1
            audit_logger.warning("Audit queue full; dropped %s on %s %s", entry.action, entry.resource, entry.resource_id)

    async def _write(self, entry: AuditEntry) -> None:
        async with self._session_factory() as session:
            session.add(entry.to_model())
            await session.commit()

    async def _run(self) -> None:
        while True:
            entry = await self._queue.get()
            try:
                await self._write(entry)
                self.written += 1
            except asyncio.CancelledError:
                raise
            except Exception:
                self.failures += 1
                audit_logger.exception(
                    "Failed to write audit log %s on %s %s", entry.action, entry.resource, entry.resource_id
                )
            finally:
                self._queue.task_done()

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._run(), name="audit-trail-writer")

    async def drain(self) -> None:
        """Wait until every queued entry has been written or has failed.

        ``join`` also covers the entry the worker has already taken off the
        queue but not yet finished writing.
        """
        self._ensure_worker()
        await self._queue.join()

    async def stop(self) -> None:
        await self.drain()
        if self._worker and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None


def get_audit_trail(request: Request) -> AuditTrail:
    return request.app.state.audit_trail


def get_ip_from_request(request: Request | None) -> str | None:
    if request is None:
        return None
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return (
        request.headers.get("cf-connecting-ip")
        or request.headers.get("x-real-ip")
        or (request.client.host if request.client else None)
    )


def get_user_agent_from_request(request: Request | None) -> str | None:
    if request is None:
        return None
    return request.headers.get("user-agent") or None


@dataclass
class AuditFilters:
    action: str | None = None
    resource: str | None = None
    user_id: uuid.UUID | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    search: str | None = None

    def apply(self, stmt: Select) -> Select:
        if self.action:
            stmt = stmt.where(AuditLog.action == self.action)
        if self.resource:
            stmt = stmt.where(AuditLog.resource == self.resource)
        if self.user_id:
            stmt = stmt.where(AuditLog.user_id == self.user_id)
        if self.start_date:
            stmt = stmt.where(AuditLog.created_at >= self.start_date)
        if self.end_date:
            stmt = stmt.where(AuditLog.created_at <= self.end_date)
        if self.search:
            pattern = f"%{self.search}%"
            stmt = stmt.where(
                or_(
                    AuditLog.action.like(pattern),
                    AuditLog.resource.like(pattern),
                    AuditLog.resource_id.like(pattern),
                )
            )
        return stmt


@dataclass
class AuditRow:
    log: AuditLog
    user_name: str | None
    user_email: str | None

    @property
    def details(self) -> Optional[dict[str, Any]]:
        if not self.log.details:
            return None
        try:
            return json.loads(self.log.details)
        except ValueError:
            return {"raw": self.log.details}


class AuditService:
    @staticmethod
    def log_action(
        trail: AuditTrail,
        *,
        user_id: uuid.UUID | None,
        action: AuditAction | str,
        resource: AuditResource | str,
        resource_id: str | uuid.UUID | None = None,
        details: dict[str, Any] | None = None,
        request: Request | None = None,
    ) -> None:
        """
        Queue an audit event. Never raises.
        """
        try:
            trail.record(
                AuditEntry(
                    user_id=user_id,
                    action=getattr(action, "value", action),
                    resource=getattr(resource, "value", resource),
                    resource_id=str(resource_id) if resource_id is not None else None,
                    details=details,
                    ip_address=get_ip_from_request(request),
                    user_agent=get_user_agent_from_request(request),
                )
            )
        except Exception:
            audit_logger.exception("Failed to queue audit log %s", action)

    @staticmethod
    def log_employee_create(trail: AuditTrail, user_id: uuid.UUID, employee: Employee, request: Request | None = None) -> None:
        AuditService.log_action(
            trail,
            user_id=user_id,
            action=AuditAction.EMPLOYEE_CREATE,
            resource=AuditResource.EMPLOYEE,
            resource_id=employee.id,
            details={
                "name": employee.name,
                "email": employee.email,
                "position": employee.position,
                "department": employee.department,
            },
            request=request,
        )

    @staticmethod
    def log_employee_update(trail: AuditTrail, user_id: uuid.UUID, employee_id: uuid.UUID, changes: dict[str, Any], request: Request | None = None) -> None:
        AuditService.log_action(
            trail,
            user_id=user_id,
            action=AuditAction.EMPLOYEE_UPDATE,
            resource=AuditResource.EMPLOYEE,
            resource_id=employee_id,
            details={"changes": changes},
            request=request,
        )

    @staticmethod
    def log_employee_delete(trail: AuditTrail, user_id: uuid.UUID, employee: Employee, request: Request | None = None) -> None:
        AuditService.log_action(
            trail,
            user_id=user_id,
            action=AuditAction.EMPLOYEE_DELETE,
            resource=AuditResource.EMPLOYEE,
            resource_id=employee.id,
            details={"name": employee.name, "email": employee.email},
            request=request,
        )

    @staticmethod
    def log_user_role_change(trail: AuditTrail, admin_id: uuid.UUID, target_user_id: uuid.UUID, old_role: str, new_role: str, request: Request | None = None) -> None:
        AuditService.log_action(
            trail,
            user_id=admin_id,
            action=AuditAction.USER_ROLE_CHANGE,
            resource=AuditResource.USER,
            resource_id=target_user_id,
            details={"oldRole": old_role, "newRole": new_role},
            request=request,
        )

    @staticmethod
    def log_user_ban(trail: AuditTrail, admin_id: uuid.UUID, target_user_id: uuid.UUID, banned: bool, reason: str | None = None, request: Request | None = None) -> None:
        AuditService.log_action(
            trail,
            user_id=admin_id,
            action=AuditAction.USER_BAN if banned else AuditAction.USER_UNBAN,
            resource=AuditResource.USER,
            resource_id=target_user_id,
            details={"banned": banned, "reason": reason},
            request=request,
        )

    @staticmethod
    def log_data_export(trail: AuditTrail, user_id: uuid.UUID, exported_resource: str, record_count: int, request: Request | None = None) -> None:
        AuditService.log_action(
            trail,
            user_id=user_id,
            action=AuditAction.EXPORT_DATA,
            resource=AuditResource.SYSTEM,
            details={"exportedResource": exported_resource, "recordCount": record_count},
            request=request,
        )

    @staticmethod
    def _rows_query(filters: AuditFilters) -> Select:
        stmt = (
            select(AuditLog, User.name, User.email)
            .outerjoin(User, User.id == AuditLog.user_id)
            .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        )
        return filters.apply(stmt)

    @staticmethod
    async def list_logs(db: AsyncSession, filters: AuditFilters, *, page: int, limit: int) -> tuple[list[AuditRow], int]:
        total_stmt = filters.apply(select(func.count()).select_from(AuditLog))
        total = (await db.execute(total_stmt)).scalar_one()

        stmt = AuditService._rows_query(filters).limit(limit).offset((page - 1) * limit)
        result = await db.execute(stmt)
        rows = [AuditRow(log=log, user_name=name, user_email=email) for log, name, email in result.all()]
        return rows, total

    @staticmethod
    async def export_logs(db: AsyncSession, filters: AuditFilters) -> list[AuditRow]:
        result = await db.execute(AuditService._rows_query(filters))
        return [AuditRow(log=log, user_name=name, user_email=email) for log, name, email in result.all()]


CSV_HEADER = "ID,Action,Resource,Resource ID,User Name,User Email,IP Address,Details,Created At"


def _csv_field(value: Any) -> str:
    text = "" if value is None else str(value)
    if any(ch in text for ch in (",", '"', "\n", "\r")):
        return '"' + text.replace('"', '""') + '"'
    return text


def _iso_utc(value: datetime) -> str:
    value = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def render_audit_csv(rows: list[AuditRow]) -> str:
    """CSV export, one line per entry in the order given.

    The Details column is always quoted: it holds the compact JSON of the
    details blob (``{}`` when empty) with embedded quotes doubled.
    """
    lines = [CSV_HEADER]
    for row in rows:
        details = json.dumps(row.details or {}, separators=(",", ":"), ensure_ascii=False)
        lines.append(",".join([
            _csv_field(row.log.id),
            _csv_field(row.log.action),
            _csv_field(row.log.resource),
            _csv_field(row.log.resource_id),
            _csv_field(row.user_name),
            _csv_field(row.user_email),
            _csv_field(row.log.ip_address),
            '"' + details.replace('"', '""') + '"',
            _iso_utc(row.log.created_at),
        ]))
    return "\n".join(lines)
