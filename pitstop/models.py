from datetime import datetime
from sqlalchemy import (
    Column, Integer, String, DateTime, Text, Boolean, ForeignKey, Date, Numeric, JSON,
    UniqueConstraint, CheckConstraint
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from pitstop.database import Base


# ============ Principals ============

class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    user_code = Column(String(20), unique=True, nullable=False, index=True)  # C00001, T00003, ...
    email = Column(String, unique=True, index=True, nullable=False)
    hashed_password = Column(String, nullable=False)
    role = Column(String(20), nullable=False, default="customer", index=True)
    status = Column(String(20), nullable=False, default="active", index=True)

    # Profile
    first_name = Column(String(50), nullable=False)
    last_name = Column(String(50), nullable=False)
    phone_number = Column(String(20), nullable=False)
    street = Column(String(200), nullable=True)
    city = Column(String(100), nullable=True)
    province = Column(String(50), nullable=True)
    postal_code = Column(String(10), nullable=True)
    nic = Column(String(12), unique=True, nullable=True)
    date_of_birth = Column(Date, nullable=True)
    preferences = Column(JSON, nullable=True)

    # Customer details
    loyalty_points = Column(Integer, default=0)
    membership_tier = Column(String(20), nullable=True)
    emergency_contact_name = Column(String(100), nullable=True)
    emergency_contact_phone = Column(String(20), nullable=True)
    emergency_contact_relationship = Column(String(50), nullable=True)

    # Employee details
    employee_id = Column(String(20), unique=True, nullable=True)  # MEC001, FD004, ...
    department = Column(String(30), nullable=True, index=True)
    specializations = Column(JSON, nullable=True)
    join_date = Column(Date, nullable=True)
    base_salary = Column(Numeric(12, 2), nullable=True)
    commission_rate = Column(Numeric(5, 2), nullable=True)

    # Security
    email_verified = Column(Boolean, default=False)
    phone_verified = Column(Boolean, default=False)
    last_login = Column(DateTime, nullable=True)
    login_attempts = Column(Integer, default=0)
    lock_until = Column(DateTime, nullable=True)
    email_verification_token = Column(String, nullable=True)
    email_verification_expires = Column(DateTime, nullable=True)
    password_reset_token = Column(String, nullable=True)
    password_reset_expires = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    # Relationships
    certifications = relationship(
        "EmployeeCertification", back_populates="user", cascade="all, delete-orphan"
    )
    vehicles = relationship("Vehicle", back_populates="owner")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    @property
    def is_locked(self) -> bool:
        return bool(self.lock_until and self.lock_until > datetime.utcnow())

    @property
    def is_employee(self) -> bool:
        return self.role != "customer"


class EmployeeCertification(Base):
    __tablename__ = "employee_certifications"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(200), nullable=False)
    issued_by = Column(String(200), nullable=True)
    issue_date = Column(Date, nullable=True)
    expiry_date = Column(Date, nullable=True)
    certificate_number = Column(String(100), nullable=True)

    user = relationship("User", back_populates="certifications")


# ============ Vehicles ============

class Vehicle(Base):
    __tablename__ = "vehicles"

    id = Column(Integer, primary_key=True, index=True)
    vehicle_code = Column(String(20), unique=True, nullable=False, index=True)
    registration_number = Column(String(20), unique=True, nullable=False, index=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    make = Column(String(50), nullable=False)
    model = Column(String(50), nullable=False)
    year = Column(Integer, nullable=False)
    engine_number = Column(String(50), nullable=True)
    chassis_number = Column(String(50), nullable=True)
    fuel_type = Column(String(20), nullable=False)
    transmission = Column(String(20), nullable=False)
    mileage = Column(Integer, default=0, nullable=False)
    color = Column(String(30), nullable=True)
    status = Column(String(20), default="active", nullable=False, index=True)

    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    owner = relationship("User", back_populates="vehicles")

    __table_args__ = (
        CheckConstraint("mileage >= 0", name="ck_vehicle_mileage_non_negative"),
    )


# ============ Bookings ============

class Booking(Base):
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, index=True)
    booking_code = Column(String(20), unique=True, nullable=False, index=True)
    customer_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    vehicle_id = Column(Integer, ForeignKey("vehicles.id"), nullable=False, index=True)
    service_type = Column(String(20), nullable=False)
    scheduled_date = Column(Date, nullable=False, index=True)
    time_slot = Column(String(20), nullable=False)
    description = Column(Text, nullable=True)
    status = Column(String(20), default="pending", nullable=False, index=True)
    priority = Column(String(10), default="medium", nullable=False)
    assigned_inspector_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    estimated_cost = Column(Numeric(12, 2), nullable=True)
    actual_cost = Column(Numeric(12, 2), nullable=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    completed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    # Relationships
    customer = relationship("User", foreign_keys=[customer_id])
    vehicle = relationship("Vehicle")
    assigned_inspector = relationship("User", foreign_keys=[assigned_inspector_id])
    creator = relationship("User", foreign_keys=[created_by])
    notes = relationship(
        "BookingNote", back_populates="booking", cascade="all, delete-orphan",
        order_by="BookingNote.id"
    )


class BookingNote(Base):
    """Append-only note log on a booking"""
    __tablename__ = "booking_notes"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, index=True)
    note = Column(Text, nullable=False)
    added_by = Column(Integer, ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime, default=func.now())

    booking = relationship("Booking", back_populates="notes")
    author = relationship("User")


# ============ Jobs ============

class Job(Base):
    __tablename__ = "jobs"

    id = Column(Integer, primary_key=True, index=True)
    job_code = Column(String(20), unique=True, nullable=False, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False, index=True)
    title = Column(String(100), nullable=False)
    description = Column(Text, nullable=False)
    category = Column(String(20), nullable=False)
    status = Column(String(20), default="pending", nullable=False, index=True)
    priority = Column(String(10), default="medium", nullable=False)

    # Effort and cost
    estimated_hours = Column(Numeric(8, 2), nullable=False)
    actual_hours = Column(Numeric(8, 2), default=0)
    estimated_cost = Column(Numeric(12, 2), nullable=True)
    actual_cost = Column(Numeric(12, 2), nullable=True)
    parts_cost = Column(Numeric(12, 2), default=0)
    labour_cost = Column(Numeric(12, 2), default=0)

    # Requirements: lists of skill tags, tools and materials
    required_skills = Column(JSON, nullable=True)
    required_tools = Column(JSON, nullable=True)
    required_materials = Column(JSON, nullable=True)

    notes = Column(Text, nullable=True)
    internal_notes = Column(Text, nullable=True)
    customer_notes = Column(Text, nullable=True)

    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    inspected_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    approved_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    # Relationships
    booking = relationship("Booking")
    creator = relationship("User", foreign_keys=[created_by])
    inspector = relationship("User", foreign_keys=[inspected_by])
    labourers = relationship(
        "JobLabourer", back_populates="job", cascade="all, delete-orphan", order_by="JobLabourer.id"
    )
    work_logs = relationship(
        "JobWorkLog", back_populates="job", cascade="all, delete-orphan", order_by="JobWorkLog.id"
    )
    inspections = relationship(
        "JobInspection", back_populates="job", cascade="all, delete-orphan"
    )

    @property
    def completion_percentage(self) -> int:
        if self.status == "completed":
            return 100
        if self.status == "pending" or not self.estimated_hours:
            return 0
        percent = float(self.actual_hours or 0) / float(self.estimated_hours) * 100
        return min(round(percent), 95)

    @property
    def is_overdue(self) -> bool:
        if self.status in ("completed", "cancelled") or not self.started_at:
            return False
        expected_hours = float(self.estimated_hours or 0)
        elapsed_hours = (datetime.utcnow() - self.started_at).total_seconds() / 3600
        return elapsed_hours > expected_hours


class JobLabourer(Base):
    __tablename__ = "job_labourers"

    id = Column(Integer, primary_key=True, index=True)
    job_id = Column(Integer, ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    labourer_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    hours_worked = Column(Numeric(8, 2), default=0)
    assigned_at = Column(DateTime, default=func.now())

    job = relationship("Job", back_populates="labourers")
    labourer = relationship("User")

    __table_args__ = (
        UniqueConstraint('job_id', 'labourer_id', name='uq_job_labourer'),
    )


class JobWorkLog(Base):
    """Append-only timed work entry by an assigned technician"""
    __tablename__ = "job_work_logs"

    id = Column(Integer, primary_key=True, index=True)
    job_id = Column(Integer, ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    labourer_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    description = Column(Text, nullable=True)
    hours_logged = Column(Numeric(8, 2), nullable=False)
    created_at = Column(DateTime, default=func.now())

    job = relationship("Job", back_populates="work_logs")
    labourer = relationship("User")


class JobInspection(Base):
    __tablename__ = "job_inspections"

    id = Column(Integer, primary_key=True, index=True)
    job_id = Column(Integer, ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    phase = Column(String(10), nullable=False)  # pre, post
    condition = Column(Text, nullable=True)
    issues = Column(JSON, nullable=True)
    photos = Column(JSON, nullable=True)
    quality_rating = Column(Integer, nullable=True)
    approved = Column(Boolean, default=False)
    inspector_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    inspected_at = Column(DateTime, default=func.now())

    job = relationship("Job", back_populates="inspections")
    inspector = relationship("User")

    __table_args__ = (
        UniqueConstraint('job_id', 'phase', name='uq_job_inspection_phase'),
    )


# ============ Inventory ============

class InventoryItem(Base):
    __tablename__ = "inventory_items"

    id = Column(Integer, primary_key=True, index=True)
    item_code = Column(String(20), unique=True, nullable=False, index=True)
    name = Column(String(100), nullable=False, index=True)
    description = Column(Text, nullable=True)
    category = Column(String(20), nullable=False, index=True)
    brand = Column(String(100), nullable=True)
    part_number = Column(String(100), nullable=True)
    unit_price = Column(Numeric(12, 2), nullable=False)

    # Stock counters
    current_stock = Column(Integer, default=0, nullable=False)
    reserved_stock = Column(Integer, default=0, nullable=False)  # Held by approved goods requests
    minimum_stock = Column(Integer, default=0, nullable=False)

    unit = Column(String(10), nullable=False)
    supplier_name = Column(String(100), nullable=True)
    supplier_contact = Column(String(100), nullable=True)
    status = Column(String(20), default="active", nullable=False, index=True)

    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    movements = relationship("StockMovement", back_populates="item", order_by="StockMovement.id")

    __table_args__ = (
        CheckConstraint("current_stock >= 0", name="ck_inventory_current_stock_non_negative"),
        CheckConstraint("reserved_stock >= 0", name="ck_inventory_reserved_stock_non_negative"),
    )

    @property
    def is_low_stock(self) -> bool:
        return (self.current_stock or 0) <= (self.minimum_stock or 0)

    @property
    def available_stock(self) -> int:
        return (self.current_stock or 0) - (self.reserved_stock or 0)


class StockMovement(Base):
    """Every change to an item's stock counters is recorded here"""
    __tablename__ = "stock_movements"

    id = Column(Integer, primary_key=True, index=True)
    item_id = Column(Integer, ForeignKey("inventory_items.id", ondelete="CASCADE"), nullable=False, index=True)
    operation = Column(String(20), nullable=False)  # add, subtract, reserve, unreserve, release
    quantity = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    reserved_after = Column(Integer, nullable=False)
    reason = Column(String(255), nullable=True)
    goods_request_id = Column(Integer, ForeignKey("goods_requests.id"), nullable=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=func.now())

    item = relationship("InventoryItem", back_populates="movements")


# ============ Goods Requests ============

class GoodsRequest(Base):
    __tablename__ = "goods_requests"

    id = Column(Integer, primary_key=True, index=True)
    request_code = Column(String(20), unique=True, nullable=False, index=True)
    job_id = Column(Integer, ForeignKey("jobs.id"), nullable=False, index=True)
    requested_by = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    status = Column(String(20), default="pending", nullable=False, index=True)
    notes = Column(Text, nullable=True)

    approved_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    approved_at = Column(DateTime, nullable=True)
    rejection_reason = Column(Text, nullable=True)
    released_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    released_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    # Relationships
    job = relationship("Job")
    requester = relationship("User", foreign_keys=[requested_by])
    approver = relationship("User", foreign_keys=[approved_by])
    releaser = relationship("User", foreign_keys=[released_by])
    lines = relationship(
        "GoodsRequestLine", back_populates="goods_request", cascade="all, delete-orphan",
        order_by="GoodsRequestLine.id"
    )


class GoodsRequestLine(Base):
    __tablename__ = "goods_request_lines"

    id = Column(Integer, primary_key=True, index=True)
    goods_request_id = Column(Integer, ForeignKey("goods_requests.id", ondelete="CASCADE"), nullable=False, index=True)
    item_id = Column(Integer, ForeignKey("inventory_items.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    purpose = Column(String(255), nullable=True)

    goods_request = relationship("GoodsRequest", back_populates="lines")
    item = relationship("InventoryItem")

    __table_args__ = (
        CheckConstraint("quantity >= 1", name="ck_goods_request_line_quantity"),
    )


# ============ Invoices ============

class Invoice(Base):
    __tablename__ = "invoices"

    id = Column(Integer, primary_key=True, index=True)
    invoice_code = Column(String(20), unique=True, nullable=False, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), unique=True, nullable=False)
    customer_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    # Amounts
    labor_charges = Column(Numeric(12, 2), default=0)
    subtotal = Column(Numeric(12, 2), nullable=False)
    tax = Column(Numeric(12, 2), default=0)
    discount = Column(Numeric(12, 2), default=0)
    total = Column(Numeric(12, 2), nullable=False)

    status = Column(String(20), default="draft", nullable=False, index=True)
    payment_method = Column(String(20), nullable=True)
    paid_at = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)

    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    # Relationships
    booking = relationship("Booking")
    customer = relationship("User", foreign_keys=[customer_id])
    creator = relationship("User", foreign_keys=[created_by])
    lines = relationship(
        "InvoiceLine", back_populates="invoice", cascade="all, delete-orphan",
        order_by="InvoiceLine.id"
    )


class InvoiceLine(Base):
    __tablename__ = "invoice_lines"

    id = Column(Integer, primary_key=True, index=True)
    invoice_id = Column(Integer, ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True)
    description = Column(String(255), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(12, 2), nullable=False)
    total = Column(Numeric(12, 2), nullable=False)

    invoice = relationship("Invoice", back_populates="lines")


# ============ Leave Requests ============

class LeaveRequest(Base):
    __tablename__ = "leave_requests"

    id = Column(Integer, primary_key=True, index=True)
    request_code = Column(String(20), unique=True, nullable=False, index=True)
    employee_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    leave_type = Column(String(20), nullable=False)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    total_days = Column(Integer, nullable=False)
    reason = Column(String(500), nullable=False)
    status = Column(String(20), default="pending", nullable=False, index=True)

    approved_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    approved_at = Column(DateTime, nullable=True)
    rejection_reason = Column(Text, nullable=True)

    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    employee = relationship("User", foreign_keys=[employee_id])
    approver = relationship("User", foreign_keys=[approved_by])

    __table_args__ = (
        CheckConstraint("end_date >= start_date", name="ck_leave_request_range"),
    )


# ============ Identifier Sequences ============

class SequenceCounter(Base):
    """Last allocated number per identifier namespace, e.g. 'bookings.booking_code:BK'"""
    __tablename__ = "sequence_counters"

    key = Column(String(100), primary_key=True)
    value = Column(Integer, nullable=False, default=0)
