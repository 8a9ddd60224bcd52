"""
Employee leave request endpoints
"""
from datetime import date, timedelta
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, field_validator, model_validator
from sqlalchemy import func
from sqlalchemy.orm import Session
import logging

from pitstop.api.projections import user_summary
from pitstop.database import get_db
from pitstop.errors import Conflict, Forbidden, NotFound, ValidationError
from pitstop.models import LeaveRequest, User
from pitstop.services import transitions
from pitstop.services.dependency import ensure_owner_or_roles, require_employee, require_roles
from pitstop.services.identifiers import next_identifier
from pitstop.utils.pagination import page_envelope, paginate

router = APIRouter()
logger = logging.getLogger(__name__)

LEAVE_TYPES = ("annual", "sick", "emergency", "maternity", "paternity", "unpaid")
LEAVE_MANAGERS = ("admin", "manager")
ACTIVE_LEAVE_STATUSES = ("pending", "approved")


def not_in_past(v):
    if v is not None and v < date.today():
        raise ValueError("Start date cannot be in the past")
    return v


# ============ Pydantic Schemas ============

class LeaveRequestCreate(BaseModel):
    leave_type: Literal[LEAVE_TYPES]
    start_date: date
    end_date: date
    reason: str = Field(min_length=1, max_length=500)

    @field_validator('start_date')
    @classmethod
    def check_start_date(cls, v):
        return not_in_past(v)

    @model_validator(mode='after')
    def check_range(self):
        if self.end_date < self.start_date:
            raise ValueError("End date must be on or after start date")
        return self


class LeaveRequestUpdate(BaseModel):
    leave_type: Optional[Literal[LEAVE_TYPES]] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    reason: Optional[str] = Field(None, min_length=1, max_length=500)

    @field_validator('start_date')
    @classmethod
    def check_start_date(cls, v):
        return not_in_past(v)


class LeaveRejection(BaseModel):
    reason: str = Field(min_length=1, max_length=1000)


# ============ Helper Functions ============

def leave_request_to_response(leave_request: LeaveRequest) -> dict:
    return {
        "id": leave_request.id,
        "request_code": leave_request.request_code,
        "employee": user_summary(leave_request.employee),
        "leave_type": leave_request.leave_type,
        "start_date": leave_request.start_date,
        "end_date": leave_request.end_date,
        "total_days": leave_request.total_days,
        "reason": leave_request.reason,
        "status": leave_request.status,
        "approved_by": user_summary(leave_request.approver),
        "approved_at": leave_request.approved_at,
        "rejection_reason": leave_request.rejection_reason,
        "created_at": leave_request.created_at,
        "updated_at": leave_request.updated_at,
    }


def get_leave_request_or_404(db: Session, request_id: int) -> LeaveRequest:
    leave_request = db.query(LeaveRequest).filter(LeaveRequest.id == request_id).first()
    if not leave_request:
        raise NotFound(f"No leave request found with id: {request_id}")
    return leave_request


def total_days(start_date: date, end_date: date) -> int:
    return (end_date - start_date).days + 1


def lock_employee(db: Session, employee_id: int):
    # Row lock serialises leave writes for one employee only
    db.query(User.id).filter(User.id == employee_id).with_for_update().first()


def ensure_no_overlap(db: Session, employee_id: int, start_date: date, end_date: date,
                      exclude_id: Optional[int] = None):
    """Inclusive ranges: [a, b] and [c, d] overlap when a <= d and c <= b"""
    query = db.query(LeaveRequest.id).filter(
        LeaveRequest.employee_id == employee_id,
        LeaveRequest.status.in_(ACTIVE_LEAVE_STATUSES),
        LeaveRequest.start_date <= end_date,
        LeaveRequest.end_date >= start_date
    )
    if exclude_id:
        query = query.filter(LeaveRequest.id != exclude_id)
    if query.first():
        raise Conflict("You already have a leave request for overlapping dates")


def ensure_pending_owner(leave_request: LeaveRequest, user: User, action: str):
    if leave_request.employee_id != user.id:
        raise Forbidden(f"Not authorized to {action} this leave request")
    if leave_request.status != "pending":
        raise ValidationError(f"Only pending leave requests can be {action}d")


# ============ Leave Request Endpoints ============

@router.post("/", status_code=status.HTTP_201_CREATED)
async def create_leave_request(
    data: LeaveRequestCreate,
    current_user: User = Depends(require_employee),
    db: Session = Depends(get_db)
):
    try:
        lock_employee(db, current_user.id)
        ensure_no_overlap(db, current_user.id, data.start_date, data.end_date)

        leave_request = LeaveRequest(
            request_code=next_identifier(db, LeaveRequest.request_code, "LR"),
            employee_id=current_user.id,
            leave_type=data.leave_type,
            start_date=data.start_date,
            end_date=data.end_date,
            total_days=total_days(data.start_date, data.end_date),
            reason=data.reason,
            status="pending",
        )
        db.add(leave_request)
        db.commit()
        db.refresh(leave_request)
        logger.info(f"Leave request {leave_request.request_code} submitted by {current_user.user_code}")
        return {
            "success": True,
            "message": "Leave request submitted successfully",
            "leave_request": leave_request_to_response(leave_request),
        }
    except HTTPException as e:
        db.rollback()
        raise e
    except Exception as e:
        db.rollback()
        logger.error(f"Error creating leave request: {str(e)}")
        raise


@router.get("/my-requests")
async def get_my_leave_requests(
    status: Optional[str] = Query(None),
    current_user: User = Depends(require_employee),
    db: Session = Depends(get_db)
):
    query = db.query(LeaveRequest).filter(LeaveRequest.employee_id == current_user.id)
    if status:
        query = query.filter(LeaveRequest.status == status)
    requests = query.order_by(LeaveRequest.start_date.desc(), LeaveRequest.id.desc()).all()
    return {"success": True, "count": len(requests), "leave_requests": [leave_request_to_response(r) for r in requests]}


@router.get("/")
async def get_leave_requests(
    status: Optional[str] = Query(None),
    leave_type: Optional[str] = Query(None),
    employee_id: Optional[int] = Query(None),
    department: Optional[str] = Query(None),
    start_date: Optional[date] = Query(None, description="Requests ending on or after this date"),
    end_date: Optional[date] = Query(None, description="Requests starting on or before this date"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    current_user: User = Depends(require_roles(*LEAVE_MANAGERS)),
    db: Session = Depends(get_db)
):
    query = db.query(LeaveRequest)

    if status:
        query = query.filter(LeaveRequest.status == status)
    if leave_type:
        query = query.filter(LeaveRequest.leave_type == leave_type)
    if employee_id:
        query = query.filter(LeaveRequest.employee_id == employee_id)
    if department:
        query = query.join(User, LeaveRequest.employee_id == User.id).filter(User.department == department)
    if start_date:
        query = query.filter(LeaveRequest.end_date >= start_date)
    if end_date:
        query = query.filter(LeaveRequest.start_date <= end_date)

    requests, total = paginate(query.order_by(LeaveRequest.created_at.desc(), LeaveRequest.id.desc()), page, limit)
    return page_envelope("leave_requests", [leave_request_to_response(r) for r in requests], total, page, limit)


@router.get("/stats")
async def get_leave_stats(
    year: Optional[int] = Query(None, description="Calendar year, defaults to the current one"),
    current_user: User = Depends(require_roles(*LEAVE_MANAGERS)),
    db: Session = Depends(get_db)
):
    year = year or date.today().year
    in_year = db.query(LeaveRequest).filter(
        LeaveRequest.start_date >= date(year, 1, 1),
        LeaveRequest.start_date <= date(year, 12, 31)
    )

    by_status = dict(
        in_year.with_entities(LeaveRequest.status, func.count(LeaveRequest.id)).group_by(LeaveRequest.status).all()
    )
    by_type = in_year.filter(LeaveRequest.status == "approved").with_entities(
        LeaveRequest.leave_type, func.count(LeaveRequest.id), func.sum(LeaveRequest.total_days)
    ).group_by(LeaveRequest.leave_type).all()

    return {
        "success": True,
        "stats": {
            "year": year,
            "total_requests": sum(by_status.values()),
            "by_status": {s: by_status.get(s, 0) for s in transitions.LEAVE.states},
            "approved_by_type": {
                leave_type: {"count": count, "total_days": int(days or 0)}
                for leave_type, count, days in by_type
            },
        },
    }


@router.get("/upcoming")
async def get_upcoming_leave(
    days: int = Query(30, ge=1, le=365),
    current_user: User = Depends(require_roles(*LEAVE_MANAGERS)),
    db: Session = Depends(get_db)
):
    today = date.today()
    requests = db.query(LeaveRequest).filter(
        LeaveRequest.status == "approved",
        LeaveRequest.start_date >= today,
        LeaveRequest.start_date <= today + timedelta(days=days)
    ).order_by(LeaveRequest.start_date, LeaveRequest.id).all()
    return {"success": True, "count": len(requests), "leave_requests": [leave_request_to_response(r) for r in requests]}


@router.get("/{request_id}")
async def get_leave_request(
    request_id: int,
    current_user: User = Depends(require_employee),
    db: Session = Depends(get_db)
):
    leave_request = get_leave_request_or_404(db, request_id)
    ensure_owner_or_roles(
        current_user, leave_request.employee_id, LEAVE_MANAGERS, "Not authorized to view this leave request"
    )
    return {"success": True, "leave_request": leave_request_to_response(leave_request)}


@router.patch("/{request_id}")
async def update_leave_request(
    request_id: int,
    data: LeaveRequestUpdate,
    current_user: User = Depends(require_employee),
    db: Session = Depends(get_db)
):
    leave_request = get_leave_request_or_404(db, request_id)
    ensure_pending_owner(leave_request, current_user, "update")

    start_date = data.start_date or leave_request.start_date
    end_date = data.end_date or leave_request.end_date
    if end_date < start_date:
        raise ValidationError("End date must be on or after start date")

    try:
        lock_employee(db, current_user.id)
        ensure_no_overlap(db, current_user.id, start_date, end_date, exclude_id=leave_request.id)

        if data.leave_type is not None:
            leave_request.leave_type = data.leave_type
        if data.reason is not None:
            leave_request.reason = data.reason
        leave_request.start_date = start_date
        leave_request.end_date = end_date
        leave_request.total_days = total_days(start_date, end_date)
        db.commit()
        db.refresh(leave_request)
        logger.info(f"Leave request {leave_request.request_code} updated by {current_user.user_code}")
        return {
            "success": True,
            "message": "Leave request updated successfully",
            "leave_request": leave_request_to_response(leave_request),
        }
    except HTTPException as e:
        db.rollback()
        raise e
    except Exception as e:
        db.rollback()
        logger.error(f"Error updating leave request: {str(e)}")
        raise


@router.delete("/{request_id}")
async def delete_leave_request(
    request_id: int,
    current_user: User = Depends(require_employee),
    db: Session = Depends(get_db)
):
    leave_request = get_leave_request_or_404(db, request_id)
    ensure_pending_owner(leave_request, current_user, "delete")

    request_code = leave_request.request_code
    db.delete(leave_request)
    db.commit()
    logger.info(f"Leave request {request_code} deleted by {current_user.user_code}")
    return {"success": True, "message": "Leave request deleted successfully"}


@router.patch("/{request_id}/approve")
async def approve_leave_request(
    request_id: int,
    current_user: User = Depends(require_roles(*LEAVE_MANAGERS)),
    db: Session = Depends(get_db)
):
    leave_request = get_leave_request_or_404(db, request_id)
    result = transitions.LEAVE.transition(leave_request.status, "approved", {"actor_id": current_user.id})
    result.apply_to(leave_request)
    db.commit()
    db.refresh(leave_request)
    logger.info(f"Leave request {leave_request.request_code} approved by {current_user.user_code}")
    return {
        "success": True,
        "message": "Leave request approved successfully",
        "leave_request": leave_request_to_response(leave_request),
    }


@router.patch("/{request_id}/reject")
async def reject_leave_request(
    request_id: int,
    data: LeaveRejection,
    current_user: User = Depends(require_roles(*LEAVE_MANAGERS)),
    db: Session = Depends(get_db)
):
    leave_request = get_leave_request_or_404(db, request_id)
    result = transitions.LEAVE.transition(leave_request.status, "rejected", {
        "actor_id": current_user.id,
        "reason": data.reason,
    })
    result.apply_to(leave_request)
    db.commit()
    db.refresh(leave_request)
    logger.info(f"Leave request {leave_request.request_code} rejected by {current_user.user_code}")
    return {
        "success": True,
        "message": "Leave request rejected",
        "leave_request": leave_request_to_response(leave_request),
    }
