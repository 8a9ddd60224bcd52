import os

# Settings are read at import time
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["SMTP_USERNAME"] = ""
os.environ["SMTP_PASSWORD"] = ""

import itertools
from datetime import date, timedelta

import pytest
from fastapi.testclient import TestClient

from pitstop.database import Base, SessionLocal, engine
from pitstop.main import app
from pitstop.models import Booking, InventoryItem, Job, JobLabourer, User, Vehicle
from pitstop.services.identifiers import next_employee_id, next_identifier, next_user_code
from pitstop.utils.security import create_access_token, get_password_hash

PASSWORD = "Password123"

DEFAULT_DEPARTMENTS = {
    "technician": "mechanical",
    "service_advisor": "customer_service",
    "manager": "management",
    "admin": "management",
    "cashier": "front_desk",
}

_sequence = itertools.count(1)


@pytest.fixture(autouse=True)
def reset_database():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        yield test_client


def auth_headers(user: User) -> dict:
    token = create_access_token(data={"sub": str(user.id), "role": user.role})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def make_user(db):
    def factory(role="customer", **overrides):
        n = next(_sequence)
        user = User(
            user_code=next_user_code(db, role),
            email=overrides.pop("email", f"{role}{n}@pitstop.test"),
            hashed_password=get_password_hash(overrides.pop("password", PASSWORD)),
            role=role,
            status="active",
            first_name=overrides.pop("first_name", role.title().replace("_", "")),
            last_name=overrides.pop("last_name", f"User{n}"),
            phone_number="+94771234567",
            email_verified=True,
            login_attempts=0,
            loyalty_points=0,
        )
        if role != "customer":
            department = overrides.pop("department", DEFAULT_DEPARTMENTS[role])
            user.department = department
            user.employee_id = next_employee_id(db, department)
            user.specializations = overrides.pop("specializations", [])
        for field, value in overrides.items():
            setattr(user, field, value)
        db.add(user)
        db.commit()
        db.refresh(user)
        return user
    return factory


@pytest.fixture
def headers_for(make_user):
    """Create a user with `role` and return (user, auth headers)"""
    def factory(role, **overrides):
        user = make_user(role, **overrides)
        return user, auth_headers(user)
    return factory


@pytest.fixture
def make_vehicle(db):
    def factory(owner: User, **overrides):
        n = next(_sequence)
        vehicle = Vehicle(
            vehicle_code=next_identifier(db, Vehicle.vehicle_code, "VEH"),
            registration_number=overrides.pop("registration_number", f"CAB-{n:04d}"),
            owner_id=owner.id,
            make="Toyota",
            model="Corolla",
            year=2018,
            fuel_type="petrol",
            transmission="automatic",
            mileage=overrides.pop("mileage", 45000),
            status="active",
        )
        for field, value in overrides.items():
            setattr(vehicle, field, value)
        db.add(vehicle)
        db.commit()
        db.refresh(vehicle)
        return vehicle
    return factory


@pytest.fixture
def make_booking(db, make_vehicle):
    def factory(customer: User, status="pending", vehicle=None, **overrides):
        vehicle = vehicle or make_vehicle(customer)
        booking = Booking(
            booking_code=next_identifier(db, Booking.booking_code, "BK"),
            customer_id=customer.id,
            vehicle_id=vehicle.id,
            service_type=overrides.pop("service_type", "repair"),
            scheduled_date=overrides.pop("scheduled_date", date.today() + timedelta(days=1)),
            time_slot=overrides.pop("time_slot", "09:00-11:00"),
            status=status,
            priority="medium",
        )
        for field, value in overrides.items():
            setattr(booking, field, value)
        db.add(booking)
        db.commit()
        db.refresh(booking)
        return booking
    return factory


@pytest.fixture
def make_job(db, make_user, make_booking):
    def factory(status="pending", labourers=(), **overrides):
        booking = overrides.pop("booking", None) or make_booking(make_user("customer"), status="inspecting")
        job = Job(
            job_code=next_identifier(db, Job.job_code, "JOB"),
            booking_id=booking.id,
            title=overrides.pop("title", "Replace brake pads"),
            description="Front pads worn below limit",
            category=overrides.pop("category", "repair"),
            status=status,
            priority="medium",
            estimated_hours=overrides.pop("estimated_hours", 2),
            actual_hours=0,
            labour_cost=0,
            parts_cost=0,
        )
        for field, value in overrides.items():
            setattr(job, field, value)
        db.add(job)
        db.flush()
        for labourer in labourers:
            db.add(JobLabourer(job_id=job.id, labourer_id=labourer.id, hours_worked=0))
        db.commit()
        db.refresh(job)
        return job
    return factory


@pytest.fixture
def make_item(db):
    def factory(**overrides):
        n = next(_sequence)
        item = InventoryItem(
            item_code=next_identifier(db, InventoryItem.item_code, "ITM"),
            name=overrides.pop("name", f"Brake Pad Set {n}"),
            category=overrides.pop("category", "parts"),
            unit_price=overrides.pop("unit_price", 25),
            current_stock=overrides.pop("current_stock", 10),
            reserved_stock=overrides.pop("reserved_stock", 0),
            minimum_stock=overrides.pop("minimum_stock", 2),
            unit="piece",
            status="active",
        )
        for field, value in overrides.items():
            setattr(item, field, value)
        db.add(item)
        db.commit()
        db.refresh(item)
        return item
    return factory
