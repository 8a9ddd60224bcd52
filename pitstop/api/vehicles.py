"""
Vehicle registry endpoints
"""
from datetime import datetime
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import func, or_
from sqlalchemy.orm import Session
import logging

from pitstop.api.projections import user_summary
from pitstop.database import get_db
from pitstop.errors import Conflict, Forbidden, NotFound, ValidationError
from pitstop.models import Booking, User, Vehicle
from pitstop.services.dependency import ensure_owner_or_roles, get_current_user, require_roles
from pitstop.services.identifiers import next_identifier
from pitstop.utils.pagination import page_envelope, paginate

router = APIRouter()
logger = logging.getLogger(__name__)

FUEL_TYPES = ("petrol", "diesel", "hybrid", "electric")
TRANSMISSIONS = ("manual", "automatic", "cvt")
VEHICLE_STATUSES = ("active", "inactive", "scrapped")
VEHICLE_STAFF = ("admin", "manager", "service_advisor", "cashier", "technician")


def validate_model_year(v):
    if v is not None and not 1900 <= v <= datetime.utcnow().year + 1:
        raise ValueError(f"Year must be between 1900 and {datetime.utcnow().year + 1}")
    return v


# ============ Pydantic Schemas ============

class VehicleCreate(BaseModel):
    registration_number: str = Field(min_length=1, max_length=20)
    owner_id: int
    make: str = Field(min_length=1, max_length=50)
    model: str = Field(min_length=1, max_length=50)
    year: int
    engine_number: Optional[str] = None
    chassis_number: Optional[str] = None
    fuel_type: Literal[FUEL_TYPES]
    transmission: Literal[TRANSMISSIONS]
    mileage: int = Field(0, ge=0)
    color: Optional[str] = None

    @field_validator('year')
    @classmethod
    def check_year(cls, v):
        return validate_model_year(v)

    @field_validator('registration_number')
    @classmethod
    def upper_registration(cls, v):
        return v.strip().upper()


class VehicleUpdate(BaseModel):
    registration_number: Optional[str] = Field(None, min_length=1, max_length=20)
    make: Optional[str] = Field(None, min_length=1, max_length=50)
    model: Optional[str] = Field(None, min_length=1, max_length=50)
    year: Optional[int] = None
    engine_number: Optional[str] = None
    chassis_number: Optional[str] = None
    fuel_type: Optional[Literal[FUEL_TYPES]] = None
    transmission: Optional[Literal[TRANSMISSIONS]] = None
    mileage: Optional[int] = Field(None, ge=0)
    color: Optional[str] = None

    @field_validator('year')
    @classmethod
    def check_year(cls, v):
        return validate_model_year(v)

    @field_validator('registration_number')
    @classmethod
    def upper_registration(cls, v):
        return v.strip().upper() if v is not None else v


class MileageUpdate(BaseModel):
    mileage: int = Field(ge=0)


class VehicleStatusUpdate(BaseModel):
    status: Literal[VEHICLE_STATUSES]


class OwnershipTransfer(BaseModel):
    new_owner_id: int


# ============ Helper Functions ============

def vehicle_to_response(vehicle: Vehicle) -> dict:
    return {
        "id": vehicle.id,
        "vehicle_code": vehicle.vehicle_code,
        "registration_number": vehicle.registration_number,
        "owner": user_summary(vehicle.owner),
        "make": vehicle.make,
        "model": vehicle.model,
        "year": vehicle.year,
        "engine_number": vehicle.engine_number,
        "chassis_number": vehicle.chassis_number,
        "fuel_type": vehicle.fuel_type,
        "transmission": vehicle.transmission,
        "mileage": vehicle.mileage,
        "color": vehicle.color,
        "status": vehicle.status,
        "created_at": vehicle.created_at,
        "updated_at": vehicle.updated_at,
    }


def get_vehicle_or_404(db: Session, vehicle_id: int) -> Vehicle:
    vehicle = db.query(Vehicle).filter(Vehicle.id == vehicle_id).first()
    if not vehicle:
        raise NotFound(f"No vehicle found with id: {vehicle_id}")
    return vehicle


def get_customer_or_error(db: Session, user_id: int, label: str = "Vehicle owner") -> User:
    customer = db.query(User).filter(User.id == user_id).first()
    if not customer:
        raise NotFound(f"{label} not found")
    if customer.role != "customer":
        raise ValidationError(f"{label} must be a customer")
    return customer


def ensure_registration_available(db: Session, registration_number: str, exclude_id: Optional[int] = None):
    query = db.query(Vehicle).filter(Vehicle.registration_number == registration_number)
    if exclude_id:
        query = query.filter(Vehicle.id != exclude_id)
    if query.first():
        raise Conflict("Vehicle with this registration number already exists")


def ensure_mileage_not_decreasing(vehicle: Vehicle, mileage: int):
    if mileage < (vehicle.mileage or 0):
        raise ValidationError(
            f"Mileage cannot be decreased (current: {vehicle.mileage}, requested: {mileage})"
        )


# ============ Vehicle Endpoints ============

@router.post("/", status_code=status.HTTP_201_CREATED)
async def create_vehicle(
    data: VehicleCreate,
    current_user: User = Depends(require_roles("admin", "manager", "service_advisor")),
    db: Session = Depends(get_db)
):
    ensure_registration_available(db, data.registration_number)
    get_customer_or_error(db, data.owner_id)

    try:
        vehicle = Vehicle(
            vehicle_code=next_identifier(db, Vehicle.vehicle_code, "VEH"),
            **data.model_dump()
        )
        db.add(vehicle)
        db.commit()
        db.refresh(vehicle)
        logger.info(f"Vehicle {vehicle.vehicle_code} ({vehicle.registration_number}) created by {current_user.user_code}")
        return {"success": True, "message": "Vehicle created successfully", "vehicle": vehicle_to_response(vehicle)}
    except Exception as e:
        db.rollback()
        logger.error(f"Error creating vehicle: {str(e)}")
        raise


@router.get("/")
async def get_vehicles(
    owner_id: Optional[int] = Query(None, description="Filter by owner"),
    make: Optional[str] = Query(None),
    model: Optional[str] = Query(None),
    fuel_type: Optional[str] = Query(None),
    transmission: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    year_from: Optional[int] = Query(None),
    year_to: Optional[int] = Query(None),
    search: Optional[str] = Query(None, description="Search registration, code, make, model, engine or chassis"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    query = db.query(Vehicle)

    # Customers only ever see their own vehicles
    if current_user.role == "customer":
        owner_id = current_user.id

    if owner_id:
        query = query.filter(Vehicle.owner_id == owner_id)
    if make:
        query = query.filter(Vehicle.make.ilike(f"%{make}%"))
    if model:
        query = query.filter(Vehicle.model.ilike(f"%{model}%"))
    if fuel_type:
        query = query.filter(Vehicle.fuel_type == fuel_type)
    if transmission:
        query = query.filter(Vehicle.transmission == transmission)
    if status:
        query = query.filter(Vehicle.status == status)
    if year_from:
        query = query.filter(Vehicle.year >= year_from)
    if year_to:
        query = query.filter(Vehicle.year <= year_to)
    if search:
        search_term = f"%{search}%"
        query = query.filter(
            or_(
                Vehicle.registration_number.ilike(search_term),
                Vehicle.vehicle_code.ilike(search_term),
                Vehicle.make.ilike(search_term),
                Vehicle.model.ilike(search_term),
                Vehicle.engine_number.ilike(search_term),
                Vehicle.chassis_number.ilike(search_term),
            )
        )

    vehicles, total = paginate(query.order_by(Vehicle.created_at.desc(), Vehicle.id.desc()), page, limit)
    return page_envelope("vehicles", [vehicle_to_response(v) for v in vehicles], total, page, limit)


@router.get("/search")
async def search_vehicles(
    q: Optional[str] = Query(None, description="Registration, code, make or model"),
    limit: int = Query(10, ge=1, le=50),
    current_user: User = Depends(require_roles(*VEHICLE_STAFF)),
    db: Session = Depends(get_db)
):
    """Quick lookup used while taking a booking"""
    if not q or len(q.strip()) < 2:
        return {
            "success": True,
            "count": 0,
            "vehicles": [],
            "message": "Please provide at least 2 characters for search",
        }

    search_term = f"%{q.strip()}%"
    vehicles = db.query(Vehicle).filter(
        Vehicle.status == "active",
        or_(
            Vehicle.registration_number.ilike(search_term),
            Vehicle.vehicle_code.ilike(search_term),
            Vehicle.make.ilike(search_term),
            Vehicle.model.ilike(search_term),
        )
    ).order_by(Vehicle.registration_number).limit(limit).all()

    return {"success": True, "count": len(vehicles), "vehicles": [vehicle_to_response(v) for v in vehicles]}


@router.get("/stats/overview")
async def get_vehicle_stats(
    current_user: User = Depends(require_roles("admin", "manager")),
    db: Session = Depends(get_db)
):
    by_status = dict(db.query(Vehicle.status, func.count(Vehicle.id)).group_by(Vehicle.status).all())
    by_fuel = dict(db.query(Vehicle.fuel_type, func.count(Vehicle.id)).group_by(Vehicle.fuel_type).all())
    by_transmission = dict(
        db.query(Vehicle.transmission, func.count(Vehicle.id)).group_by(Vehicle.transmission).all()
    )
    top_makes = db.query(Vehicle.make, func.count(Vehicle.id).label("count")).group_by(Vehicle.make).order_by(
        func.count(Vehicle.id).desc()
    ).limit(10).all()
    average_year = db.query(func.avg(Vehicle.year)).scalar()

    return {
        "success": True,
        "stats": {
            "total_vehicles": sum(by_status.values()),
            "active_vehicles": by_status.get("active", 0),
            "inactive_vehicles": by_status.get("inactive", 0),
            "scrapped_vehicles": by_status.get("scrapped", 0),
            "average_age": round(datetime.utcnow().year - float(average_year)) if average_year else 0,
            "by_fuel_type": by_fuel,
            "by_transmission": by_transmission,
            "top_makes": [{"make": make, "count": count} for make, count in top_makes],
        },
    }


@router.get("/registration/{registration_number}")
async def get_vehicle_by_registration(
    registration_number: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    vehicle = db.query(Vehicle).filter(
        Vehicle.registration_number == registration_number.strip().upper()
    ).first()
    if not vehicle:
        raise NotFound(f"No vehicle found with registration number: {registration_number}")
    ensure_owner_or_roles(current_user, vehicle.owner_id, VEHICLE_STAFF, "Not authorized to view this vehicle")
    return {"success": True, "vehicle": vehicle_to_response(vehicle)}


@router.get("/owner/{owner_id}")
async def get_vehicles_by_owner(
    owner_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    ensure_owner_or_roles(current_user, owner_id, VEHICLE_STAFF, "You can only view your own vehicles")

    vehicles = db.query(Vehicle).filter(Vehicle.owner_id == owner_id).order_by(Vehicle.created_at.desc()).all()
    return {"success": True, "count": len(vehicles), "vehicles": [vehicle_to_response(v) for v in vehicles]}


@router.get("/{vehicle_id}")
async def get_vehicle(
    vehicle_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    vehicle = get_vehicle_or_404(db, vehicle_id)
    ensure_owner_or_roles(current_user, vehicle.owner_id, VEHICLE_STAFF, "Not authorized to view this vehicle")
    return {"success": True, "vehicle": vehicle_to_response(vehicle)}


@router.patch("/{vehicle_id}")
async def update_vehicle(
    vehicle_id: int,
    data: VehicleUpdate,
    current_user: User = Depends(require_roles("admin", "manager", "service_advisor")),
    db: Session = Depends(get_db)
):
    vehicle = get_vehicle_or_404(db, vehicle_id)
    updates = data.model_dump(exclude_unset=True)

    if updates.get("registration_number") and updates["registration_number"] != vehicle.registration_number:
        ensure_registration_available(db, updates["registration_number"], exclude_id=vehicle.id)
    if updates.get("mileage") is not None:
        ensure_mileage_not_decreasing(vehicle, updates["mileage"])

    try:
        for field, value in updates.items():
            if value is not None:
                setattr(vehicle, field, value)
        db.commit()
        db.refresh(vehicle)
        logger.info(f"Vehicle {vehicle.vehicle_code} updated by {current_user.user_code}")
        return {"success": True, "message": "Vehicle updated successfully", "vehicle": vehicle_to_response(vehicle)}
    except Exception as e:
        db.rollback()
        logger.error(f"Error updating vehicle: {str(e)}")
        raise


@router.patch("/{vehicle_id}/mileage")
async def update_vehicle_mileage(
    vehicle_id: int,
    data: MileageUpdate,
    current_user: User = Depends(require_roles("admin", "manager", "service_advisor", "technician")),
    db: Session = Depends(get_db)
):
    vehicle = get_vehicle_or_404(db, vehicle_id)
    ensure_mileage_not_decreasing(vehicle, data.mileage)

    previous = vehicle.mileage
    vehicle.mileage = data.mileage
    db.commit()
    logger.info(f"Vehicle {vehicle.vehicle_code} mileage {previous} -> {data.mileage} by {current_user.user_code}")
    return {
        "success": True,
        "message": "Mileage updated successfully",
        "vehicle": {
            "id": vehicle.id,
            "vehicle_code": vehicle.vehicle_code,
            "registration_number": vehicle.registration_number,
            "previous_mileage": previous,
            "mileage": vehicle.mileage,
        },
    }


@router.patch("/{vehicle_id}/status")
async def update_vehicle_status(
    vehicle_id: int,
    data: VehicleStatusUpdate,
    current_user: User = Depends(require_roles("admin", "manager", "service_advisor")),
    db: Session = Depends(get_db)
):
    vehicle = get_vehicle_or_404(db, vehicle_id)
    vehicle.status = data.status
    db.commit()
    logger.info(f"Vehicle {vehicle.vehicle_code} status set to {data.status} by {current_user.user_code}")
    return {"success": True, "message": f"Vehicle status updated to {data.status}", "vehicle": vehicle_to_response(vehicle)}


@router.delete("/{vehicle_id}")
async def delete_vehicle(
    vehicle_id: int,
    permanent: bool = Query(False, description="Remove the record instead of deactivating it"),
    current_user: User = Depends(require_roles("admin", "manager")),
    db: Session = Depends(get_db)
):
    vehicle = get_vehicle_or_404(db, vehicle_id)

    if permanent:
        if current_user.role != "admin":
            raise Forbidden("Only administrators can permanently delete vehicles")
        if db.query(Booking.id).filter(Booking.vehicle_id == vehicle.id).first():
            raise ValidationError("Vehicle has bookings and cannot be permanently deleted")
        summary = {"vehicle_code": vehicle.vehicle_code, "registration_number": vehicle.registration_number}
        db.delete(vehicle)
        db.commit()
        logger.info(f"Vehicle {summary['vehicle_code']} permanently deleted by {current_user.user_code}")
        return {"success": True, "message": "Vehicle permanently deleted", "vehicle": summary}

    vehicle.status = "inactive"
    db.commit()
    logger.info(f"Vehicle {vehicle.vehicle_code} deactivated by {current_user.user_code}")
    return {
        "success": True,
        "message": "Vehicle deactivated successfully",
        "vehicle": {
            "vehicle_code": vehicle.vehicle_code,
            "registration_number": vehicle.registration_number,
            "status": vehicle.status,
        },
    }


@router.patch("/{vehicle_id}/transfer-ownership")
async def transfer_ownership(
    vehicle_id: int,
    data: OwnershipTransfer,
    current_user: User = Depends(require_roles("admin", "manager")),
    db: Session = Depends(get_db)
):
    vehicle = get_vehicle_or_404(db, vehicle_id)
    new_owner = get_customer_or_error(db, data.new_owner_id, "New owner")
    if vehicle.owner_id == new_owner.id:
        raise ValidationError("Vehicle is already owned by this customer")

    previous_owner = vehicle.owner
    vehicle.owner_id = new_owner.id
    db.commit()
    db.refresh(vehicle)
    logger.info(
        f"Vehicle {vehicle.vehicle_code} transferred from {previous_owner.user_code} "
        f"to {new_owner.user_code} by {current_user.user_code}"
    )
    return {
        "success": True,
        "message": "Vehicle ownership transferred successfully",
        "vehicle": vehicle_to_response(vehicle),
        "transfer_details": {
            "previous_owner": user_summary(previous_owner),
            "new_owner": user_summary(new_owner),
            "transfer_date": datetime.utcnow(),
        },
    }
