"""
Job tracking endpoints: labour assignment, work logs and inspections
"""
from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field, model_validator
from sqlalchemy import func, or_
from sqlalchemy.orm import Session
import logging

from pitstop.api.projections import booking_summary, user_summary
from pitstop.config import settings
from pitstop.database import get_db
from pitstop.errors import Forbidden, InvalidTransition, NotFound, ValidationError
from pitstop.models import Booking, GoodsRequest, Job, JobInspection, JobLabourer, JobWorkLog, User
from pitstop.schemas import SPECIALIZATIONS
from pitstop.services import transitions
from pitstop.services.dependency import EMPLOYEE_ROLES, ensure_owner_or_roles, get_current_user, require_roles
from pitstop.services.identifiers import next_identifier
from pitstop.utils.pagination import decimal_to_float, page_envelope, paginate

router = APIRouter()
logger = logging.getLogger(__name__)

JOB_CATEGORIES = ("mechanical", "electrical", "bodywork", "detailing", "inspection", "repair", "maintenance")
PRIORITIES = ("low", "medium", "high", "urgent")
JOB_MANAGERS = ("service_advisor", "manager", "admin")


# ============ Pydantic Schemas ============

class RequiredTool(BaseModel):
    name: str
    description: Optional[str] = None


class RequiredMaterial(BaseModel):
    name: str
    quantity: Optional[float] = Field(None, ge=0)
    unit: Optional[str] = None


class JobBase(BaseModel):
    title: str = Field(min_length=1, max_length=100)
    description: str = Field(min_length=1, max_length=1000)
    category: Literal[JOB_CATEGORIES]
    priority: Literal[PRIORITIES] = "medium"
    estimated_hours: float = Field(gt=0)
    estimated_cost: Optional[float] = Field(None, ge=0)
    required_skills: List[Literal[SPECIALIZATIONS]] = []
    required_tools: List[RequiredTool] = []
    required_materials: List[RequiredMaterial] = []
    notes: Optional[str] = None
    internal_notes: Optional[str] = None
    customer_notes: Optional[str] = None


class JobCreate(JobBase):
    booking_id: Optional[int] = None


class JobUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, min_length=1, max_length=1000)
    category: Optional[Literal[JOB_CATEGORIES]] = None
    priority: Optional[Literal[PRIORITIES]] = None
    estimated_hours: Optional[float] = Field(None, gt=0)
    estimated_cost: Optional[float] = Field(None, ge=0)
    actual_cost: Optional[float] = Field(None, ge=0)
    parts_cost: Optional[float] = Field(None, ge=0)
    required_skills: Optional[List[Literal[SPECIALIZATIONS]]] = None
    required_tools: Optional[List[RequiredTool]] = None
    required_materials: Optional[List[RequiredMaterial]] = None
    notes: Optional[str] = None
    internal_notes: Optional[str] = None
    customer_notes: Optional[str] = None


class JobStatusUpdate(BaseModel):
    status: Literal["pending", "working", "completed", "cancelled", "on_hold"]
    notes: Optional[str] = None


class LabourerAssignment(BaseModel):
    labourer_ids: List[int] = Field(min_length=1)


class WorkLogCreate(BaseModel):
    start_time: datetime
    end_time: datetime
    description: Optional[str] = Field(None, max_length=1000)

    @model_validator(mode='after')
    def check_range(self):
        if self.end_time <= self.start_time:
            raise ValueError("End time must be after start time")
        return self


class InspectionReport(BaseModel):
    phase: Literal["pre", "post"]
    condition: Optional[str] = None
    issues: List[str] = []
    photos: List[str] = []
    quality_rating: Optional[int] = Field(None, ge=1, le=5)
    approved: bool = False


# ============ Helper Functions ============

def job_to_response(job: Job) -> dict:
    return {
        "id": job.id,
        "job_code": job.job_code,
        "booking": booking_summary(job.booking),
        "title": job.title,
        "description": job.description,
        "category": job.category,
        "status": job.status,
        "priority": job.priority,
        "estimated_hours": decimal_to_float(job.estimated_hours),
        "actual_hours": decimal_to_float(job.actual_hours),
        "estimated_cost": decimal_to_float(job.estimated_cost),
        "actual_cost": decimal_to_float(job.actual_cost),
        "parts_cost": decimal_to_float(job.parts_cost),
        "labour_cost": decimal_to_float(job.labour_cost),
        "completion_percentage": job.completion_percentage,
        "is_overdue": job.is_overdue,
        "requirements": {
            "skills": job.required_skills or [],
            "tools": job.required_tools or [],
            "materials": job.required_materials or [],
        },
        "assigned_labourers": [
            {
                "labourer": user_summary(assignment.labourer),
                "assigned_at": assignment.assigned_at,
                "hours_worked": decimal_to_float(assignment.hours_worked),
            }
            for assignment in job.labourers
        ],
        "work_log": [
            {
                "id": entry.id,
                "labourer": user_summary(entry.labourer),
                "start_time": entry.start_time,
                "end_time": entry.end_time,
                "description": entry.description,
                "hours_logged": decimal_to_float(entry.hours_logged),
                "created_at": entry.created_at,
            }
            for entry in job.work_logs
        ],
        "inspections": {
            inspection.phase: {
                "condition": inspection.condition,
                "issues": inspection.issues or [],
                "photos": inspection.photos or [],
                "quality_rating": inspection.quality_rating,
                "approved": inspection.approved,
                "inspector": user_summary(inspection.inspector),
                "inspected_at": inspection.inspected_at,
            }
            for inspection in job.inspections
        },
        "notes": job.notes,
        "internal_notes": job.internal_notes,
        "customer_notes": job.customer_notes,
        "created_by": user_summary(job.creator),
        "inspected_by": user_summary(job.inspector),
        "started_at": job.started_at,
        "completed_at": job.completed_at,
        "approved_at": job.approved_at,
        "created_at": job.created_at,
        "updated_at": job.updated_at,
    }


def get_job_or_404(db: Session, job_id: int) -> Job:
    job = db.query(Job).filter(Job.id == job_id).first()
    if not job:
        raise NotFound(f"No job found with id: {job_id}")
    return job


def is_assigned(job: Job, user: User) -> bool:
    return any(assignment.labourer_id == user.id for assignment in job.labourers)


def ensure_can_view(job: Job, user: User):
    if user.role == "technician" and not is_assigned(job, user):
        raise Forbidden("Access denied. Job not assigned to you")


def logged_hours(job: Job) -> Decimal:
    return sum((Decimal(str(entry.hours_logged)) for entry in job.work_logs), Decimal("0"))


def dump_requirements(data) -> dict:
    fields = {}
    for name in ("required_skills", "required_tools", "required_materials"):
        value = getattr(data, name)
        if value is not None:
            fields[name] = [v.model_dump() if isinstance(v, BaseModel) else v for v in value]
    return fields


def create_job_for_booking(db: Session, booking_id: int, data: JobBase, current_user: User) -> Job:
    booking = db.query(Booking).filter(Booking.id == booking_id).first()
    if not booking:
        raise NotFound("Booking not found")
    if booking.status != "inspecting":
        raise ValidationError("Jobs can only be created for bookings under inspection")

    try:
        job = Job(
            job_code=next_identifier(db, Job.job_code, "JOB"),
            booking_id=booking.id,
            title=data.title,
            description=data.description,
            category=data.category,
            priority=data.priority,
            estimated_hours=Decimal(str(data.estimated_hours)),
            estimated_cost=data.estimated_cost,
            notes=data.notes,
            internal_notes=data.internal_notes,
            customer_notes=data.customer_notes,
            status="pending",
            actual_hours=0,
            labour_cost=0,
            parts_cost=0,
            created_by=current_user.id,
            **dump_requirements(data),
        )
        db.add(job)
        db.commit()
        db.refresh(job)
        logger.info(f"Job {job.job_code} created for booking {booking.booking_code} by {current_user.user_code}")
        return job
    except Exception as e:
        db.rollback()
        logger.error(f"Error creating job: {str(e)}")
        raise


# ============ Job Endpoints ============

@router.post("/", status_code=status.HTTP_201_CREATED)
async def create_job(
    data: JobCreate,
    current_user: User = Depends(require_roles(*JOB_MANAGERS)),
    db: Session = Depends(get_db)
):
    if data.booking_id is None:
        raise ValidationError("booking_id is required")
    job = create_job_for_booking(db, data.booking_id, data, current_user)
    return {"success": True, "message": "Job created successfully", "job": job_to_response(job)}


@router.post("/booking/{booking_id}", status_code=status.HTTP_201_CREATED)
async def create_job_for_booking_route(
    booking_id: int,
    data: JobBase,
    current_user: User = Depends(require_roles(*JOB_MANAGERS)),
    db: Session = Depends(get_db)
):
    job = create_job_for_booking(db, booking_id, data, current_user)
    return {"success": True, "message": "Job created successfully", "job": job_to_response(job)}


@router.get("/")
async def get_jobs(
    status: Optional[str] = Query(None, description="Filter by status"),
    category: Optional[str] = Query(None),
    priority: Optional[str] = Query(None),
    booking_id: Optional[int] = Query(None),
    labourer_id: Optional[int] = Query(None),
    search: Optional[str] = Query(None, description="Search job code or title"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    current_user: User = Depends(require_roles(*EMPLOYEE_ROLES)),
    db: Session = Depends(get_db)
):
    query = db.query(Job)

    # Technicians only see work assigned to them
    if current_user.role == "technician":
        labourer_id = current_user.id

    if status:
        query = query.filter(Job.status == status)
    if category:
        query = query.filter(Job.category == category)
    if priority:
        query = query.filter(Job.priority == priority)
    if booking_id:
        query = query.filter(Job.booking_id == booking_id)
    if labourer_id:
        query = query.join(JobLabourer).filter(JobLabourer.labourer_id == labourer_id)
    if search:
        search_term = f"%{search}%"
        query = query.filter(or_(Job.job_code.ilike(search_term), Job.title.ilike(search_term)))

    jobs, total = paginate(query.order_by(Job.created_at.desc(), Job.id.desc()), page, limit)
    return page_envelope("jobs", [job_to_response(j) for j in jobs], total, page, limit)


@router.get("/stats")
async def get_job_stats(
    current_user: User = Depends(require_roles(*JOB_MANAGERS)),
    db: Session = Depends(get_db)
):
    by_status = dict(db.query(Job.status, func.count(Job.id)).group_by(Job.status).all())
    by_category = dict(db.query(Job.category, func.count(Job.id)).group_by(Job.category).all())
    completed = db.query(
        func.avg(Job.actual_hours), func.avg(Job.estimated_hours), func.sum(Job.labour_cost)
    ).filter(Job.status == "completed").one()

    open_jobs = db.query(Job).filter(Job.status.in_(["working", "on_hold"])).all()

    return {
        "success": True,
        "stats": {
            "total_jobs": sum(by_status.values()),
            "by_status": {s: by_status.get(s, 0) for s in transitions.JOB.states},
            "by_category": {c: by_category.get(c, 0) for c in JOB_CATEGORIES},
            "average_actual_hours": round(float(completed[0]), 2) if completed[0] is not None else 0,
            "average_estimated_hours": round(float(completed[1]), 2) if completed[1] is not None else 0,
            "total_labour_cost": decimal_to_float(completed[2]) or 0,
            "overdue_jobs": sum(1 for j in open_jobs if j.is_overdue),
        },
    }


@router.get("/my-jobs")
async def get_my_jobs(
    status: Optional[str] = Query(None),
    current_user: User = Depends(require_roles("technician")),
    db: Session = Depends(get_db)
):
    query = db.query(Job).join(JobLabourer).filter(JobLabourer.labourer_id == current_user.id)
    if status:
        query = query.filter(Job.status == status)
    jobs = query.order_by(Job.created_at.desc()).all()
    return {"success": True, "count": len(jobs), "jobs": [job_to_response(j) for j in jobs]}


@router.get("/booking/{booking_id}")
async def get_jobs_by_booking(
    booking_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    booking = db.query(Booking).filter(Booking.id == booking_id).first()
    if not booking:
        raise NotFound("Booking not found")
    ensure_owner_or_roles(current_user, booking.customer_id, EMPLOYEE_ROLES, "Not authorized to view these jobs")

    jobs = db.query(Job).filter(Job.booking_id == booking_id).order_by(Job.id).all()
    if current_user.role == "technician":
        jobs = [j for j in jobs if is_assigned(j, current_user)]
    return {"success": True, "count": len(jobs), "jobs": [job_to_response(j) for j in jobs]}


@router.get("/{job_id}")
async def get_job(
    job_id: int,
    current_user: User = Depends(require_roles(*EMPLOYEE_ROLES)),
    db: Session = Depends(get_db)
):
    job = get_job_or_404(db, job_id)
    ensure_can_view(job, current_user)
    return {"success": True, "job": job_to_response(job)}


@router.patch("/{job_id}")
async def update_job(
    job_id: int,
    data: JobUpdate,
    current_user: User = Depends(require_roles(*JOB_MANAGERS)),
    db: Session = Depends(get_db)
):
    job = get_job_or_404(db, job_id)
    if transitions.JOB.is_terminal(job.status):
        raise ValidationError(f"Cannot update a {job.status} job")

    updates = data.model_dump(exclude_unset=True, exclude={"required_skills", "required_tools", "required_materials"})
    updates.update(dump_requirements(data))
    try:
        for field, value in updates.items():
            if value is None and field not in ("notes", "internal_notes", "customer_notes"):
                continue
            if field == "estimated_hours":
                value = Decimal(str(value))
            setattr(job, field, value)
        db.commit()
        db.refresh(job)
        logger.info(f"Job {job.job_code} updated by {current_user.user_code}")
        return {"success": True, "message": "Job updated successfully", "job": job_to_response(job)}
    except Exception as e:
        db.rollback()
        logger.error(f"Error updating job: {str(e)}")
        raise


@router.delete("/{job_id}")
async def delete_job(
    job_id: int,
    current_user: User = Depends(require_roles("manager", "admin")),
    db: Session = Depends(get_db)
):
    job = get_job_or_404(db, job_id)
    if job.status in ("working", "completed"):
        raise ValidationError(f"Cannot delete a {job.status} job")
    if db.query(GoodsRequest.id).filter(GoodsRequest.job_id == job.id).first():
        raise ValidationError("Job has goods requests and cannot be deleted")

    job_code = job.job_code
    db.delete(job)
    db.commit()
    logger.info(f"Job {job_code} deleted by {current_user.user_code}")
    return {"success": True, "message": "Job deleted successfully", "job": {"id": job_id, "job_code": job_code}}


@router.patch("/{job_id}/status")
async def update_job_status(
    job_id: int,
    data: JobStatusUpdate,
    current_user: User = Depends(require_roles("technician", *JOB_MANAGERS)),
    db: Session = Depends(get_db)
):
    job = get_job_or_404(db, job_id)

    if current_user.role == "technician":
        if not is_assigned(job, current_user):
            raise Forbidden("Access denied. Job not assigned to you")
        if data.status not in transitions.TECHNICIAN_JOB_MOVES.get(job.status, ()):
            raise InvalidTransition("job", job.status, data.status)

    previous = job.status
    result = transitions.JOB.transition(job.status, data.status, {
        "actor_id": current_user.id,
        "labourer_count": len(job.labourers),
        "started_at": job.started_at,
        "logged_hours": logged_hours(job),
        "hourly_rate": settings.labour_hourly_rate,
    })

    try:
        result.apply_to(job)
        if data.notes:
            job.notes = data.notes
        db.commit()
        db.refresh(job)
        logger.info(f"Job {job.job_code} {previous} -> {job.status} by {current_user.user_code}")
        return {"success": True, "message": "Job status updated successfully", "job": job_to_response(job)}
    except Exception as e:
        db.rollback()
        logger.error(f"Error updating job status: {str(e)}")
        raise


@router.patch("/{job_id}/assign-labourers")
async def assign_labourers(
    job_id: int,
    data: LabourerAssignment,
    current_user: User = Depends(require_roles(*JOB_MANAGERS)),
    db: Session = Depends(get_db)
):
    job = get_job_or_404(db, job_id)
    if job.status != "pending":
        raise ValidationError("Can only assign labourers to pending jobs")

    labourer_ids = list(dict.fromkeys(data.labourer_ids))
    labourers = db.query(User).filter(
        User.id.in_(labourer_ids),
        User.role == "technician",
        User.status == "active"
    ).all()
    if len(labourers) != len(labourer_ids):
        raise ValidationError("Some labourers not found or not active technicians")

    required_skills = set(job.required_skills or [])
    if required_skills and not any(required_skills & set(l.specializations or []) for l in labourers):
        raise ValidationError("None of the selected labourers have the required skills")

    try:
        # Keep rows for labourers who stay on the job so their hours survive
        current = {assignment.labourer_id: assignment for assignment in job.labourers}
        job.labourers = [
            current.get(labourer_id) or JobLabourer(labourer_id=labourer_id, hours_worked=0)
            for labourer_id in labourer_ids
        ]
        db.commit()
        db.refresh(job)
        logger.info(f"Labourers {labourer_ids} assigned to job {job.job_code} by {current_user.user_code}")
        return {"success": True, "message": "Labourers assigned successfully", "job": job_to_response(job)}
    except Exception as e:
        db.rollback()
        logger.error(f"Error assigning labourers: {str(e)}")
        raise


@router.post("/{job_id}/work-log", status_code=status.HTTP_201_CREATED)
async def add_work_log(
    job_id: int,
    data: WorkLogCreate,
    current_user: User = Depends(require_roles("technician")),
    db: Session = Depends(get_db)
):
    job = get_job_or_404(db, job_id)
    assignment = next((a for a in job.labourers if a.labourer_id == current_user.id), None)
    if assignment is None:
        raise Forbidden("Access denied. Job not assigned to you")
    if job.status not in ("working", "on_hold"):
        raise ValidationError(f"Cannot log work on a {job.status} job")

    hours = Decimal(str(round((data.end_time - data.start_time).total_seconds() / 3600, 2)))

    try:
        job.work_logs.append(JobWorkLog(
            labourer_id=current_user.id,
            start_time=data.start_time,
            end_time=data.end_time,
            description=data.description,
            hours_logged=hours,
        ))
        assignment.hours_worked = Decimal(str(assignment.hours_worked or 0)) + hours
        job.actual_hours = logged_hours(job)
        job.labour_cost = job.actual_hours * Decimal(str(settings.labour_hourly_rate))
        db.commit()
        db.refresh(job)
        logger.info(f"{hours}h logged on job {job.job_code} by {current_user.user_code}")
        return {"success": True, "message": "Work log added successfully", "job": job_to_response(job)}
    except Exception as e:
        db.rollback()
        logger.error(f"Error adding work log: {str(e)}")
        raise


@router.post("/{job_id}/inspection", status_code=status.HTTP_201_CREATED)
async def add_inspection_report(
    job_id: int,
    data: InspectionReport,
    current_user: User = Depends(require_roles(*JOB_MANAGERS)),
    db: Session = Depends(get_db)
):
    job = get_job_or_404(db, job_id)
    if data.phase == "post" and job.status != "completed":
        raise ValidationError("Post-work inspection requires a completed job")

    try:
        inspection = next((i for i in job.inspections if i.phase == data.phase), None)
        if inspection is None:
            inspection = JobInspection(job_id=job.id, phase=data.phase)
            job.inspections.append(inspection)

        inspection.condition = data.condition
        inspection.issues = data.issues
        inspection.photos = data.photos
        inspection.quality_rating = data.quality_rating
        inspection.approved = data.approved
        inspection.inspector_id = current_user.id
        inspection.inspected_at = datetime.utcnow()

        job.inspected_by = current_user.id
        if data.phase == "post" and data.approved:
            job.approved_at = datetime.utcnow()

        db.commit()
        db.refresh(job)
        logger.info(f"{data.phase}-work inspection recorded on job {job.job_code} by {current_user.user_code}")
        return {"success": True, "message": "Inspection report added successfully", "job": job_to_response(job)}
    except Exception as e:
        db.rollback()
        logger.error(f"Error adding inspection report: {str(e)}")
        raise
