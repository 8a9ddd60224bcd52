"""
Invoice endpoints for completed bookings
"""
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy import func, or_
from sqlalchemy.orm import Session
import logging

from pitstop.api.projections import booking_summary, user_summary, vehicle_summary
from pitstop.config import settings
from pitstop.database import get_db
from pitstop.errors import Conflict, Forbidden, NotFound, ValidationError
from pitstop.models import Booking, Invoice, InvoiceLine, User
from pitstop.services import transitions
from pitstop.services.dependency import STAFF_ROLES, ensure_owner_or_roles, get_current_user, require_roles
from pitstop.services.identifiers import next_identifier
from pitstop.utils.pagination import decimal_to_float, page_envelope, paginate

router = APIRouter()
logger = logging.getLogger(__name__)

INVOICE_MANAGERS = ("admin", "manager", "service_advisor")
INVOICE_STATUSES = ("draft", "pending", "paid", "cancelled")
MONEY_FIELDS = ("items", "labor_charges", "tax", "discount")


# ============ Pydantic Schemas ============

class InvoiceItem(BaseModel):
    description: str = Field(min_length=1, max_length=255)
    quantity: int = Field(ge=1)
    unit_price: float = Field(ge=0)


class InvoiceCreate(BaseModel):
    booking_id: int
    customer_id: Optional[int] = None
    items: List[InvoiceItem] = Field(min_length=1)
    labor_charges: float = Field(0, ge=0)
    tax: float = Field(0, ge=0)
    discount: float = Field(0, ge=0)
    notes: Optional[str] = Field(None, max_length=1000)


class InvoiceUpdate(BaseModel):
    items: Optional[List[InvoiceItem]] = Field(None, min_length=1)
    labor_charges: Optional[float] = Field(None, ge=0)
    tax: Optional[float] = Field(None, ge=0)
    discount: Optional[float] = Field(None, ge=0)
    notes: Optional[str] = Field(None, max_length=1000)
    payment_method: Optional[Literal[transitions.PAYMENT_METHODS]] = None
    paid_at: Optional[datetime] = None


class InvoiceStatusUpdate(BaseModel):
    status: Literal[INVOICE_STATUSES]
    payment_method: Optional[str] = None
    paid_at: Optional[datetime] = None


# ============ Helper Functions ============

def money(value) -> Decimal:
    return Decimal(str(value or 0)).quantize(Decimal("0.01"))


def build_lines(items: List[InvoiceItem]) -> List[InvoiceLine]:
    return [
        InvoiceLine(
            description=item.description,
            quantity=item.quantity,
            unit_price=money(item.unit_price),
            total=money(item.unit_price) * item.quantity,
        )
        for item in items
    ]


def compute_totals(invoice: Invoice):
    """subtotal = line totals + labour charges, total = subtotal + tax - discount"""
    lines_total = sum((money(line.total) for line in invoice.lines), Decimal("0"))
    subtotal = lines_total + money(invoice.labor_charges)
    total = subtotal + money(invoice.tax) - money(invoice.discount)
    if total < 0:
        raise ValidationError("Invoice total cannot be negative")
    invoice.subtotal = subtotal
    invoice.total = total


def invoice_to_response(invoice: Invoice) -> dict:
    return {
        "id": invoice.id,
        "invoice_code": invoice.invoice_code,
        "booking": booking_summary(invoice.booking),
        "customer": user_summary(invoice.customer),
        "items": [
            {
                "id": line.id,
                "description": line.description,
                "quantity": line.quantity,
                "unit_price": decimal_to_float(line.unit_price),
                "total": decimal_to_float(line.total),
            }
            for line in invoice.lines
        ],
        "labor_charges": decimal_to_float(invoice.labor_charges),
        "subtotal": decimal_to_float(invoice.subtotal),
        "tax": decimal_to_float(invoice.tax),
        "discount": decimal_to_float(invoice.discount),
        "total": decimal_to_float(invoice.total),
        "status": invoice.status,
        "payment_method": invoice.payment_method,
        "paid_at": invoice.paid_at,
        "notes": invoice.notes,
        "created_by": user_summary(invoice.creator),
        "created_at": invoice.created_at,
        "updated_at": invoice.updated_at,
    }


def get_invoice_or_404(db: Session, invoice_id: int) -> Invoice:
    invoice = db.query(Invoice).filter(Invoice.id == invoice_id).first()
    if not invoice:
        raise NotFound(f"No invoice found with id: {invoice_id}")
    return invoice


# ============ Invoice Endpoints ============

@router.post("/", status_code=status.HTTP_201_CREATED)
async def create_invoice(
    data: InvoiceCreate,
    current_user: User = Depends(require_roles(*INVOICE_MANAGERS)),
    db: Session = Depends(get_db)
):
    booking = db.query(Booking).filter(Booking.id == data.booking_id).first()
    if not booking:
        raise NotFound("Booking not found")
    if booking.status != "completed":
        raise ValidationError("Invoices can only be created for completed bookings")
    if data.customer_id is not None and data.customer_id != booking.customer_id:
        raise ValidationError("Customer does not match the booking")
    if db.query(Invoice.id).filter(Invoice.booking_id == booking.id).first():
        raise Conflict("Invoice already exists for this booking")

    try:
        invoice = Invoice(
            invoice_code=next_identifier(db, Invoice.invoice_code, "INV"),
            booking_id=booking.id,
            customer_id=booking.customer_id,
            labor_charges=money(data.labor_charges),
            tax=money(data.tax),
            discount=money(data.discount),
            notes=data.notes,
            status="draft",
            created_by=current_user.id,
            lines=build_lines(data.items),
        )
        compute_totals(invoice)
        db.add(invoice)
        db.commit()
        db.refresh(invoice)
        logger.info(f"Invoice {invoice.invoice_code} created for booking {booking.booking_code} by {current_user.user_code}")
        return {"success": True, "message": "Invoice created successfully", "invoice": invoice_to_response(invoice)}
    except HTTPException as e:
        db.rollback()
        raise e
    except Exception as e:
        db.rollback()
        logger.error(f"Error creating invoice: {str(e)}")
        raise


@router.get("/")
async def get_invoices(
    status: Optional[str] = Query(None),
    customer_id: Optional[int] = Query(None),
    payment_method: Optional[str] = Query(None),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    query = db.query(Invoice)

    if current_user.role == "customer":
        customer_id = current_user.id
    elif current_user.role not in STAFF_ROLES:
        raise Forbidden("Not authorized to view invoices")

    if status:
        query = query.filter(Invoice.status == status)
    if customer_id:
        query = query.filter(Invoice.customer_id == customer_id)
    if payment_method:
        query = query.filter(Invoice.payment_method == payment_method)
    if start_date:
        query = query.filter(Invoice.created_at >= start_date)
    if end_date:
        query = query.filter(Invoice.created_at <= end_date)

    invoices, total = paginate(query.order_by(Invoice.created_at.desc(), Invoice.id.desc()), page, limit)
    return page_envelope("invoices", [invoice_to_response(i) for i in invoices], total, page, limit)


@router.get("/search")
async def search_invoices(
    q: str = Query(..., min_length=2, description="Invoice code or customer name/email"),
    current_user: User = Depends(require_roles(*STAFF_ROLES)),
    db: Session = Depends(get_db)
):
    search_term = f"%{q}%"
    invoices = db.query(Invoice).join(User, Invoice.customer_id == User.id).filter(or_(
        Invoice.invoice_code.ilike(search_term),
        User.first_name.ilike(search_term),
        User.last_name.ilike(search_term),
        User.email.ilike(search_term)
    )).order_by(Invoice.created_at.desc()).limit(20).all()
    return {"success": True, "count": len(invoices), "invoices": [invoice_to_response(i) for i in invoices]}


@router.get("/stats/overview")
async def get_invoice_stats(
    current_user: User = Depends(require_roles("admin", "manager")),
    db: Session = Depends(get_db)
):
    by_status = dict(db.query(Invoice.status, func.count(Invoice.id)).group_by(Invoice.status).all())
    by_method = db.query(
        Invoice.payment_method, func.count(Invoice.id), func.sum(Invoice.total)
    ).filter(Invoice.status == "paid").group_by(Invoice.payment_method).all()
    outstanding = db.query(func.sum(Invoice.total)).filter(Invoice.status.in_(["draft", "pending"])).scalar()

    # Monthly revenue over the last twelve months, grouped in Python to stay dialect neutral
    since = datetime.utcnow() - timedelta(days=365)
    monthly = {}
    for paid_at, total in db.query(Invoice.paid_at, Invoice.total).filter(
        Invoice.status == "paid", Invoice.paid_at >= since
    ):
        month = paid_at.strftime("%Y-%m")
        monthly[month] = monthly.get(month, 0) + float(total)

    return {
        "success": True,
        "stats": {
            "total_invoices": sum(by_status.values()),
            "by_status": {s: by_status.get(s, 0) for s in INVOICE_STATUSES},
            "total_revenue": round(sum(decimal_to_float(t) or 0 for _, _, t in by_method), 2),
            "outstanding_amount": round(decimal_to_float(outstanding) or 0, 2),
            "by_payment_method": {
                method: {"count": count, "total": round(decimal_to_float(t) or 0, 2)}
                for method, count, t in by_method
            },
            "monthly_revenue": [
                {"month": month, "revenue": round(monthly[month], 2)}
                for month in sorted(monthly)
            ],
        },
    }


@router.get("/invoice-code/{invoice_code}")
async def get_invoice_by_code(
    invoice_code: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    invoice = db.query(Invoice).filter(Invoice.invoice_code == invoice_code.upper()).first()
    if not invoice:
        raise NotFound(f"No invoice found with code: {invoice_code}")
    ensure_owner_or_roles(current_user, invoice.customer_id, STAFF_ROLES, "Not authorized to view this invoice")
    return {"success": True, "invoice": invoice_to_response(invoice)}


@router.get("/customer/{customer_id}")
async def get_customer_invoices(
    customer_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    ensure_owner_or_roles(current_user, customer_id, STAFF_ROLES, "Not authorized to view these invoices")
    invoices = db.query(Invoice).filter(
        Invoice.customer_id == customer_id
    ).order_by(Invoice.created_at.desc(), Invoice.id.desc()).all()
    return {"success": True, "count": len(invoices), "invoices": [invoice_to_response(i) for i in invoices]}


@router.get("/{invoice_id}")
async def get_invoice(
    invoice_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    invoice = get_invoice_or_404(db, invoice_id)
    ensure_owner_or_roles(current_user, invoice.customer_id, STAFF_ROLES, "Not authorized to view this invoice")
    return {"success": True, "invoice": invoice_to_response(invoice)}


@router.patch("/{invoice_id}")
async def update_invoice(
    invoice_id: int,
    data: InvoiceUpdate,
    current_user: User = Depends(require_roles(*INVOICE_MANAGERS, "cashier")),
    db: Session = Depends(get_db)
):
    invoice = get_invoice_or_404(db, invoice_id)
    updates = data.model_dump(exclude_unset=True)
    transitions.check_invoice_edit(invoice.status, updates.keys())
    transitions.check_payment_kept(invoice.status, updates)

    try:
        if data.items is not None:
            invoice.lines = build_lines(data.items)
        for field in ("labor_charges", "tax", "discount"):
            if updates.get(field) is not None:
                setattr(invoice, field, money(updates[field]))
        for field in ("notes", "payment_method", "paid_at"):
            if field in updates:
                setattr(invoice, field, updates[field])
        if any(field in updates for field in MONEY_FIELDS):
            compute_totals(invoice)
        db.commit()
        db.refresh(invoice)
        logger.info(f"Invoice {invoice.invoice_code} updated by {current_user.user_code}")
        return {"success": True, "message": "Invoice updated successfully", "invoice": invoice_to_response(invoice)}
    except HTTPException as e:
        db.rollback()
        raise e
    except Exception as e:
        db.rollback()
        logger.error(f"Error updating invoice: {str(e)}")
        raise


@router.patch("/{invoice_id}/status")
async def update_invoice_status(
    invoice_id: int,
    data: InvoiceStatusUpdate,
    current_user: User = Depends(require_roles(*INVOICE_MANAGERS, "cashier")),
    db: Session = Depends(get_db)
):
    invoice = get_invoice_or_404(db, invoice_id)
    previous = invoice.status
    result = transitions.INVOICE.transition(invoice.status, data.status, {
        "actor_id": current_user.id,
        "payment_method": data.payment_method,
        "paid_at": data.paid_at,
    })
    result.apply_to(invoice)
    db.commit()
    db.refresh(invoice)
    logger.info(f"Invoice {invoice.invoice_code} {previous} -> {invoice.status} by {current_user.user_code}")
    return {"success": True, "message": "Invoice status updated successfully", "invoice": invoice_to_response(invoice)}


@router.delete("/{invoice_id}")
async def delete_invoice(
    invoice_id: int,
    permanent: bool = Query(False, description="Delete the record instead of cancelling it"),
    current_user: User = Depends(require_roles("admin", "manager")),
    db: Session = Depends(get_db)
):
    invoice = get_invoice_or_404(db, invoice_id)
    if invoice.status == "paid":
        raise ValidationError("Cannot delete a paid invoice")

    invoice_code = invoice.invoice_code
    if permanent:
        db.delete(invoice)
        db.commit()
        logger.info(f"Invoice {invoice_code} permanently deleted by {current_user.user_code}")
        return {"success": True, "message": "Invoice deleted permanently"}

    transitions.INVOICE.transition(invoice.status, "cancelled").apply_to(invoice)
    db.commit()
    logger.info(f"Invoice {invoice_code} cancelled by {current_user.user_code}")
    return {"success": True, "message": "Invoice cancelled successfully"}


@router.get("/{invoice_id}/pdf")
async def get_invoice_pdf_data(
    invoice_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Everything a client needs to render the invoice document"""
    invoice = get_invoice_or_404(db, invoice_id)
    ensure_owner_or_roles(current_user, invoice.customer_id, STAFF_ROLES, "Not authorized to view this invoice")

    customer = invoice.customer
    booking = invoice.booking
    issued_at = invoice.created_at or datetime.utcnow()
    return {
        "success": True,
        "pdf_data": {
            "invoice": invoice_to_response(invoice),
            "customer": {
                **user_summary(customer),
                "address": {
                    "street": customer.street,
                    "city": customer.city,
                    "province": customer.province,
                    "postal_code": customer.postal_code,
                },
            },
            "vehicle": vehicle_summary(booking.vehicle if booking else None),
            "booking": booking_summary(booking),
            "issue_date": issued_at,
            "due_date": issued_at + timedelta(days=settings.invoice_due_days),
        },
    }
