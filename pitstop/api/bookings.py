"""
Booking scheduling endpoints
"""
from datetime import date
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import func, or_
from sqlalchemy.orm import Session
import logging

from pitstop.api.projections import user_summary, vehicle_summary
from pitstop.database import get_db
from pitstop.errors import Conflict, NotFound, ValidationError
from pitstop.models import Booking, BookingNote, User, Vehicle
from pitstop.services import transitions
from pitstop.services.dependency import ensure_owner_or_roles, require_roles
from pitstop.services.identifiers import next_identifier
from pitstop.utils.pagination import decimal_to_float, page_envelope, paginate

router = APIRouter()
logger = logging.getLogger(__name__)

SERVICE_TYPES = ("inspection", "repair", "maintenance", "bodywork", "detailing")
TIME_SLOTS = ("09:00-11:00", "11:00-13:00", "13:00-15:00", "15:00-17:00")
PRIORITIES = ("low", "medium", "high", "urgent")
BOOKING_STAFF = ("cashier", "admin", "manager", "service_advisor")


def not_in_past(v):
    if v is not None and v < date.today():
        raise ValueError("Scheduled date cannot be in the past")
    return v


# ============ Pydantic Schemas ============

class BookingCreate(BaseModel):
    customer_id: int
    vehicle_id: int
    service_type: Literal[SERVICE_TYPES]
    scheduled_date: date
    time_slot: Literal[TIME_SLOTS]
    description: Optional[str] = Field(None, max_length=500)
    priority: Literal[PRIORITIES] = "medium"
    estimated_cost: Optional[float] = Field(None, ge=0)

    @field_validator('scheduled_date')
    @classmethod
    def check_scheduled_date(cls, v):
        return not_in_past(v)


class BookingUpdate(BaseModel):
    service_type: Optional[Literal[SERVICE_TYPES]] = None
    scheduled_date: Optional[date] = None
    time_slot: Optional[Literal[TIME_SLOTS]] = None
    description: Optional[str] = Field(None, max_length=500)
    priority: Optional[Literal[PRIORITIES]] = None
    estimated_cost: Optional[float] = Field(None, ge=0)
    actual_cost: Optional[float] = Field(None, ge=0)

    @field_validator('scheduled_date')
    @classmethod
    def check_scheduled_date(cls, v):
        return not_in_past(v)


class InspectorAssignment(BaseModel):
    inspector_id: int


class BookingStatusUpdate(BaseModel):
    status: Literal["pending", "inspecting", "working", "completed", "cancelled"]
    note: Optional[str] = Field(None, max_length=1000)


class BookingCancel(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)


class BookingNoteCreate(BaseModel):
    note: str = Field(min_length=1, max_length=1000)


# ============ Helper Functions ============

def booking_to_response(booking: Booking) -> dict:
    return {
        "id": booking.id,
        "booking_code": booking.booking_code,
        "customer": user_summary(booking.customer),
        "vehicle": vehicle_summary(booking.vehicle),
        "service_type": booking.service_type,
        "scheduled_date": booking.scheduled_date,
        "time_slot": booking.time_slot,
        "description": booking.description,
        "status": booking.status,
        "priority": booking.priority,
        "assigned_inspector": user_summary(booking.assigned_inspector),
        "estimated_cost": decimal_to_float(booking.estimated_cost),
        "actual_cost": decimal_to_float(booking.actual_cost),
        "created_by": user_summary(booking.creator),
        "completed_at": booking.completed_at,
        "notes": [
            {
                "id": note.id,
                "note": note.note,
                "added_by": user_summary(note.author),
                "created_at": note.created_at,
            }
            for note in booking.notes
        ],
        "created_at": booking.created_at,
        "updated_at": booking.updated_at,
    }


def get_booking_or_404(db: Session, booking_id: int) -> Booking:
    booking = db.query(Booking).filter(Booking.id == booking_id).first()
    if not booking:
        raise NotFound(f"No booking found with id: {booking_id}")
    return booking


def ensure_slot_free(db: Session, vehicle_id: int, scheduled_date: date, time_slot: str,
                     exclude_id: Optional[int] = None):
    """A vehicle holds at most one live booking per date and time slot"""
    query = db.query(Booking.id).filter(
        Booking.vehicle_id == vehicle_id,
        Booking.scheduled_date == scheduled_date,
        Booking.time_slot == time_slot,
        Booking.status != "cancelled"
    )
    if exclude_id:
        query = query.filter(Booking.id != exclude_id)
    if query.first():
        raise Conflict("Vehicle already has a booking for this date and time slot")


def lock_vehicle(db: Session, vehicle_id: int) -> Vehicle:
    # Row lock serialises bookings for the same vehicle only
    vehicle = db.query(Vehicle).filter(Vehicle.id == vehicle_id).with_for_update().first()
    if not vehicle:
        raise NotFound(f"No vehicle found with id: {vehicle_id}")
    return vehicle


def add_note(db: Session, booking: Booking, text: str, author: User):
    db.add(BookingNote(booking_id=booking.id, note=text, added_by=author.id))


# ============ Booking Endpoints ============

@router.post("/", status_code=status.HTTP_201_CREATED)
async def create_booking(
    data: BookingCreate,
    current_user: User = Depends(require_roles("cashier", "admin", "manager")),
    db: Session = Depends(get_db)
):
    customer = db.query(User).filter(User.id == data.customer_id).first()
    if not customer:
        raise NotFound("Customer not found")
    if customer.role != "customer":
        raise ValidationError("Bookings can only be made for customers")
    if customer.status != "active":
        raise ValidationError(f"Customer account is {customer.status}")

    try:
        vehicle = lock_vehicle(db, data.vehicle_id)
        if vehicle.owner_id != customer.id:
            raise ValidationError("Vehicle does not belong to this customer")
        if vehicle.status != "active":
            raise ValidationError(f"Vehicle is {vehicle.status} and cannot be booked")
        ensure_slot_free(db, vehicle.id, data.scheduled_date, data.time_slot)

        booking = Booking(
            booking_code=next_identifier(db, Booking.booking_code, "BK"),
            customer_id=customer.id,
            vehicle_id=vehicle.id,
            service_type=data.service_type,
            scheduled_date=data.scheduled_date,
            time_slot=data.time_slot,
            description=data.description,
            priority=data.priority,
            estimated_cost=data.estimated_cost,
            status="pending",
            created_by=current_user.id,
        )
        db.add(booking)
        db.commit()
        db.refresh(booking)
        logger.info(f"Booking {booking.booking_code} created by {current_user.user_code}")
        return {"success": True, "message": "Booking created successfully", "booking": booking_to_response(booking)}
    except HTTPException as e:
        db.rollback()
        raise e
    except Exception as e:
        db.rollback()
        logger.error(f"Error creating booking: {str(e)}")
        raise


@router.get("/")
async def get_bookings(
    status: Optional[str] = Query(None, description="Filter by status"),
    service_type: Optional[str] = Query(None),
    priority: Optional[str] = Query(None),
    customer_id: Optional[int] = Query(None),
    vehicle_id: Optional[int] = Query(None),
    assigned_inspector_id: Optional[int] = Query(None),
    date_from: Optional[date] = Query(None),
    date_to: Optional[date] = Query(None),
    search: Optional[str] = Query(None, description="Search booking code or description"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    current_user: User = Depends(require_roles(*BOOKING_STAFF, "customer")),
    db: Session = Depends(get_db)
):
    query = db.query(Booking)

    if current_user.role == "customer":
        customer_id = current_user.id

    if status:
        query = query.filter(Booking.status == status)
    if service_type:
        query = query.filter(Booking.service_type == service_type)
    if priority:
        query = query.filter(Booking.priority == priority)
    if customer_id:
        query = query.filter(Booking.customer_id == customer_id)
    if vehicle_id:
        query = query.filter(Booking.vehicle_id == vehicle_id)
    if assigned_inspector_id:
        query = query.filter(Booking.assigned_inspector_id == assigned_inspector_id)
    if date_from:
        query = query.filter(Booking.scheduled_date >= date_from)
    if date_to:
        query = query.filter(Booking.scheduled_date <= date_to)
    if search:
        search_term = f"%{search}%"
        query = query.filter(
            or_(
                Booking.booking_code.ilike(search_term),
                Booking.description.ilike(search_term),
            )
        )

    bookings, total = paginate(query.order_by(Booking.scheduled_date.desc(), Booking.id.desc()), page, limit)
    return page_envelope("bookings", [booking_to_response(b) for b in bookings], total, page, limit)


@router.get("/available-inspectors")
async def get_available_inspectors(
    scheduled_date: Optional[date] = Query(None, description="Only inspectors free on this date"),
    time_slot: Optional[str] = Query(None, description="Only inspectors free in this slot"),
    current_user: User = Depends(require_roles("cashier", "admin", "manager")),
    db: Session = Depends(get_db)
):
    inspectors = db.query(User).filter(
        User.role == "service_advisor",
        User.status == "active"
    ).order_by(User.first_name).all()

    busy_ids = set()
    if scheduled_date and time_slot:
        busy_ids = {
            row[0] for row in db.query(Booking.assigned_inspector_id).filter(
                Booking.scheduled_date == scheduled_date,
                Booking.time_slot == time_slot,
                Booking.assigned_inspector_id.isnot(None),
                Booking.status.notin_(["cancelled", "completed"])
            )
        }

    workload = dict(
        db.query(Booking.assigned_inspector_id, func.count(Booking.id)).filter(
            Booking.status.in_(["inspecting", "working"])
        ).group_by(Booking.assigned_inspector_id).all()
    )

    available = []
    for inspector in inspectors:
        if inspector.id in busy_ids:
            continue
        entry = user_summary(inspector)
        entry["active_bookings"] = workload.get(inspector.id, 0)
        available.append(entry)

    return {"success": True, "count": len(available), "inspectors": available}


@router.get("/stats/overview")
async def get_booking_stats(
    current_user: User = Depends(require_roles("admin", "manager")),
    db: Session = Depends(get_db)
):
    today = date.today()
    by_status = dict(db.query(Booking.status, func.count(Booking.id)).group_by(Booking.status).all())
    by_service = dict(db.query(Booking.service_type, func.count(Booking.id)).group_by(Booking.service_type).all())
    by_slot = dict(db.query(Booking.time_slot, func.count(Booking.id)).group_by(Booking.time_slot).all())

    return {
        "success": True,
        "stats": {
            "total_bookings": sum(by_status.values()),
            "today_bookings": db.query(func.count(Booking.id)).filter(Booking.scheduled_date == today).scalar(),
            "upcoming_bookings": db.query(func.count(Booking.id)).filter(
                Booking.scheduled_date > today,
                Booking.status == "pending"
            ).scalar(),
            "by_status": {s: by_status.get(s, 0) for s in transitions.BOOKING.states},
            "by_service_type": {s: by_service.get(s, 0) for s in SERVICE_TYPES},
            "by_time_slot": {s: by_slot.get(s, 0) for s in TIME_SLOTS},
        },
    }


@router.get("/{booking_id}")
async def get_booking(
    booking_id: int,
    current_user: User = Depends(require_roles(*BOOKING_STAFF, "customer")),
    db: Session = Depends(get_db)
):
    booking = get_booking_or_404(db, booking_id)
    ensure_owner_or_roles(current_user, booking.customer_id, BOOKING_STAFF, "Not authorized to view this booking")
    return {"success": True, "booking": booking_to_response(booking)}


@router.patch("/{booking_id}")
async def update_booking(
    booking_id: int,
    data: BookingUpdate,
    current_user: User = Depends(require_roles("cashier", "admin", "manager")),
    db: Session = Depends(get_db)
):
    booking = get_booking_or_404(db, booking_id)
    if transitions.BOOKING.is_terminal(booking.status):
        raise ValidationError(f"Cannot update a {booking.status} booking")

    updates = data.model_dump(exclude_unset=True)
    try:
        if "scheduled_date" in updates or "time_slot" in updates:
            lock_vehicle(db, booking.vehicle_id)
            ensure_slot_free(
                db, booking.vehicle_id,
                updates.get("scheduled_date") or booking.scheduled_date,
                updates.get("time_slot") or booking.time_slot,
                exclude_id=booking.id,
            )
        for field, value in updates.items():
            if value is not None:
                setattr(booking, field, value)
        db.commit()
        db.refresh(booking)
        logger.info(f"Booking {booking.booking_code} updated by {current_user.user_code}")
        return {"success": True, "message": "Booking updated successfully", "booking": booking_to_response(booking)}
    except HTTPException as e:
        db.rollback()
        raise e
    except Exception as e:
        db.rollback()
        logger.error(f"Error updating booking: {str(e)}")
        raise


@router.patch("/{booking_id}/assign-inspector")
async def assign_inspector(
    booking_id: int,
    data: InspectorAssignment,
    current_user: User = Depends(require_roles("cashier", "admin", "manager")),
    db: Session = Depends(get_db)
):
    booking = get_booking_or_404(db, booking_id)
    if booking.status != "pending":
        raise ValidationError("Inspector can only be assigned to pending bookings")

    inspector = db.query(User).filter(User.id == data.inspector_id).first()
    if not inspector:
        raise NotFound("Inspector not found")
    if inspector.role != "service_advisor":
        raise ValidationError("Assigned user must be a service advisor")
    if inspector.status != "active":
        raise ValidationError("Inspector account is not active")

    result = transitions.BOOKING.transition(booking.status, "inspecting")
    try:
        booking.assigned_inspector_id = inspector.id
        result.apply_to(booking)
        add_note(db, booking, f"Inspector {inspector.full_name} assigned", current_user)
        db.commit()
        db.refresh(booking)
        logger.info(f"Booking {booking.booking_code} assigned to {inspector.user_code} by {current_user.user_code}")
        return {"success": True, "message": "Inspector assigned successfully", "booking": booking_to_response(booking)}
    except Exception as e:
        db.rollback()
        logger.error(f"Error assigning inspector: {str(e)}")
        raise


@router.patch("/{booking_id}/status")
async def update_booking_status(
    booking_id: int,
    data: BookingStatusUpdate,
    current_user: User = Depends(require_roles("service_advisor", "cashier", "admin", "manager")),
    db: Session = Depends(get_db)
):
    booking = get_booking_or_404(db, booking_id)
    previous = booking.status
    result = transitions.BOOKING.transition(booking.status, data.status, {"actor_id": current_user.id})

    try:
        result.apply_to(booking)
        add_note(db, booking, data.note or f"Status changed from {previous} to {data.status}", current_user)
        db.commit()
        db.refresh(booking)
        logger.info(f"Booking {booking.booking_code} {previous} -> {booking.status} by {current_user.user_code}")
        return {"success": True, "message": f"Booking status updated to {booking.status}", "booking": booking_to_response(booking)}
    except Exception as e:
        db.rollback()
        logger.error(f"Error updating booking status: {str(e)}")
        raise


@router.patch("/{booking_id}/cancel")
async def cancel_booking(
    booking_id: int,
    data: Optional[BookingCancel] = None,
    current_user: User = Depends(require_roles("cashier", "admin", "manager")),
    db: Session = Depends(get_db)
):
    booking = get_booking_or_404(db, booking_id)
    if booking.status in ("completed", "cancelled"):
        raise ValidationError(f"Cannot cancel a {booking.status} booking")
    result = transitions.BOOKING.transition(booking.status, "cancelled")

    reason = data.reason if data and data.reason else "No reason given"
    try:
        result.apply_to(booking)
        add_note(db, booking, f"Booking cancelled: {reason}", current_user)
        db.commit()
        db.refresh(booking)
        logger.info(f"Booking {booking.booking_code} cancelled by {current_user.user_code}")
        return {"success": True, "message": "Booking cancelled successfully", "booking": booking_to_response(booking)}
    except Exception as e:
        db.rollback()
        logger.error(f"Error cancelling booking: {str(e)}")
        raise


@router.post("/{booking_id}/notes", status_code=status.HTTP_201_CREATED)
async def add_booking_note(
    booking_id: int,
    data: BookingNoteCreate,
    current_user: User = Depends(require_roles("cashier", "service_advisor", "admin", "manager")),
    db: Session = Depends(get_db)
):
    booking = get_booking_or_404(db, booking_id)
    add_note(db, booking, data.note.strip(), current_user)
    db.commit()
    db.refresh(booking)
    return {"success": True, "message": "Note added successfully", "booking": booking_to_response(booking)}
