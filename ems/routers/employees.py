from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Any
import logging
import uuid

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import AliasChoices, BaseModel, ConfigDict, EmailStr, Field, field_validator
from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ems.auth import dependencies
from ems.core.exceptions import Conflict, NotFound
from ems.core.permissions import Action, Resource
from ems.core.rate_limit import edge_protection
from ems.core.responses import StandardResponse
from ems.database import get_db
from ems.models.employee import Employee
from ems.models.user import User
from ems.services.audit_service import AuditService, AuditTrail, get_audit_trail

router = APIRouter()
logger = logging.getLogger(__name__)

DUPLICATE_EMAIL = "Employee with this email already exists"


def _required_text(value: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError("must not be blank")
    return value


class EmployeeCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    email: EmailStr
    position: str = Field(min_length=1, max_length=200)
    department: str = Field(min_length=1, max_length=200)
    salary: Decimal = Field(gt=0, max_digits=10, decimal_places=2)
    hire_date: date = Field(validation_alias=AliasChoices("hire_date", "hireDate"))

    @field_validator("name", "position", "department")
    @classmethod
    def strip_text(cls, value: str) -> str:
        return _required_text(value)


class EmployeeUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    email: EmailStr | None = None
    position: str | None = Field(default=None, min_length=1, max_length=200)
    department: str | None = Field(default=None, min_length=1, max_length=200)
    salary: Decimal | None = Field(default=None, gt=0, max_digits=10, decimal_places=2)
    hire_date: date | None = Field(default=None, validation_alias=AliasChoices("hire_date", "hireDate"))

    @field_validator("name", "position", "department")
    @classmethod
    def strip_text(cls, value: str | None) -> str | None:
        return _required_text(value) if value is not None else None


class EmployeeResponse(BaseModel):
    id: uuid.UUID
    name: str
    email: str
    position: str
    department: str
    salary: float
    hire_date: date
    created_at: datetime
    updated_at: datetime
    created_by: uuid.UUID | None
    updated_by: uuid.UUID | None

    model_config = ConfigDict(from_attributes=True)


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, date):
        return value.isoformat()
    return value


async def _get_employee_or_404(db: AsyncSession, employee_id: uuid.UUID) -> Employee:
    employee = await db.get(Employee, employee_id)
    if not employee:
        raise NotFound("Employee not found")
    return employee


async def _commit_or_conflict(db: AsyncSession) -> None:
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise Conflict(DUPLICATE_EMAIL)


@router.get(
    "",
    response_model=StandardResponse[list[EmployeeResponse]],
    dependencies=[edge_protection("employee_read")],
)
async def list_employees(
    current_user: Annotated[User, Depends(dependencies.require_permission(Resource.EMPLOYEE, Action.VIEW))],
    db: Annotated[AsyncSession, Depends(get_db)],
    department: str | None = Query(None),
    search: str | None = Query(None, max_length=200),
):
    stmt = select(Employee).order_by(Employee.created_at.desc())
    if department:
        stmt = stmt.where(Employee.department == department)
    if search:
        pattern = f"%{search}%"
        stmt = stmt.where(or_(
            Employee.name.ilike(pattern),
            Employee.email.ilike(pattern),
            Employee.position.ilike(pattern),
        ))
    result = await db.execute(stmt)
    return StandardResponse(data=[EmployeeResponse.model_validate(e) for e in result.scalars().all()])


@router.get(
    "/{employee_id}",
    response_model=StandardResponse[EmployeeResponse],
    dependencies=[edge_protection("employee_read")],
)
async def get_employee(
    employee_id: uuid.UUID,
    current_user: Annotated[User, Depends(dependencies.require_permission(Resource.EMPLOYEE, Action.VIEW))],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    return StandardResponse(data=await _get_employee_or_404(db, employee_id))


@router.post(
    "",
    response_model=StandardResponse[EmployeeResponse],
    status_code=status.HTTP_201_CREATED,
    dependencies=[edge_protection("employee_create")],
)
async def create_employee(
    data: EmployeeCreate,
    request: Request,
    current_user: Annotated[User, Depends(dependencies.require_permission(Resource.EMPLOYEE, Action.CREATE))],
    db: Annotated[AsyncSession, Depends(get_db)],
    trail: Annotated[AuditTrail, Depends(get_audit_trail)],
):
    employee = Employee(
        **data.model_dump(),
        created_by=current_user.id,
        updated_by=current_user.id,
    )
    db.add(employee)
    await _commit_or_conflict(db)
    await db.refresh(employee)

    AuditService.log_employee_create(trail, current_user.id, employee, request)
    return StandardResponse(data=employee, message="Employee created successfully")


@router.patch(
    "/{employee_id}",
    response_model=StandardResponse[EmployeeResponse],
    dependencies=[edge_protection("employee_write")],
)
async def update_employee(
    employee_id: uuid.UUID,
    data: EmployeeUpdate,
    request: Request,
    current_user: Annotated[User, Depends(dependencies.require_permission(Resource.EMPLOYEE, Action.EDIT))],
    db: Annotated[AsyncSession, Depends(get_db)],
    trail: Annotated[AuditTrail, Depends(get_audit_trail)],
):
    employee = await _get_employee_or_404(db, employee_id)

    changes = {}
    for key, value in data.model_dump(exclude_unset=True, exclude_none=True).items():
        current = getattr(employee, key)
        if current != value:
            changes[key] = {"from": _jsonable(current), "to": _jsonable(value)}
            setattr(employee, key, value)

    if not changes:
        return StandardResponse(data=employee, message="No changes")

    employee.updated_by = current_user.id
    await _commit_or_conflict(db)
    await db.refresh(employee)

    AuditService.log_employee_update(trail, current_user.id, employee.id, changes, request)
    return StandardResponse(data=employee, message="Employee updated successfully")


@router.delete(
    "/{employee_id}",
    response_model=StandardResponse,
    dependencies=[edge_protection("employee_write")],
)
async def delete_employee(
    employee_id: uuid.UUID,
    request: Request,
    current_user: Annotated[User, Depends(dependencies.require_permission(Resource.EMPLOYEE, Action.DELETE))],
    db: Annotated[AsyncSession, Depends(get_db)],
    trail: Annotated[AuditTrail, Depends(get_audit_trail)],
):
    employee = await _get_employee_or_404(db, employee_id)
    await db.delete(employee)
    await db.commit()

    AuditService.log_employee_delete(trail, current_user.id, employee, request)
    return StandardResponse(message="Employee deleted successfully")
