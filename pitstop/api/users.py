"""
User administration endpoints
"""
from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import func, or_
from sqlalchemy.orm import Session
import logging

from pitstop.database import get_db
from pitstop.errors import NotFound, ValidationError
from pitstop.models import User
from pitstop.schemas import (
    AccountCreate, AdminPasswordReset, CertificationsUpdate, LoyaltyPointsUpdate, ROLES,
    SPECIALIZATIONS, USER_STATUSES, UserStatusUpdate, UserUpdate, membership_tier_for
)
from pitstop.services.auth import (
    apply_customer_details, apply_employee_details, clear_employee_details, create_user,
    ensure_unique_identity, replace_certifications, reset_login_attempts
)
from pitstop.services.dependency import require_roles
from pitstop.utils.pagination import decimal_to_float, page_envelope, paginate
from pitstop.utils.security import get_password_hash

router = APIRouter()
logger = logging.getLogger(__name__)


def user_to_response(user: User) -> dict:
    response = {
        "id": user.id,
        "user_code": user.user_code,
        "email": user.email,
        "role": user.role,
        "status": user.status,
        "profile": {
            "first_name": user.first_name,
            "last_name": user.last_name,
            "full_name": user.full_name,
            "phone_number": user.phone_number,
            "address": {
                "street": user.street,
                "city": user.city,
                "province": user.province,
                "postal_code": user.postal_code,
            },
            "nic": user.nic,
            "date_of_birth": user.date_of_birth,
        },
        "preferences": user.preferences,
        "email_verified": user.email_verified,
        "phone_verified": user.phone_verified,
        "last_login": user.last_login,
        "is_locked": user.is_locked,
        "created_at": user.created_at,
        "updated_at": user.updated_at,
    }
    if user.role == "customer":
        response["customer_details"] = {
            "loyalty_points": user.loyalty_points or 0,
            "membership_tier": user.membership_tier,
            "emergency_contact": {
                "name": user.emergency_contact_name,
                "phone_number": user.emergency_contact_phone,
                "relationship": user.emergency_contact_relationship,
            },
        }
    elif user.department:
        response["employee_details"] = {
            "employee_id": user.employee_id,
            "department": user.department,
            "specializations": user.specializations or [],
            "join_date": user.join_date,
            "base_salary": decimal_to_float(user.base_salary),
            "commission_rate": decimal_to_float(user.commission_rate),
            "certifications": [
                {
                    "id": cert.id,
                    "name": cert.name,
                    "issued_by": cert.issued_by,
                    "issue_date": cert.issue_date,
                    "expiry_date": cert.expiry_date,
                    "certificate_number": cert.certificate_number,
                }
                for cert in user.certifications
            ],
        }
    return response


def get_user_or_404(db: Session, user_id: int) -> User:
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise NotFound(f"No user found with id: {user_id}")
    return user


# ============ User Endpoints ============

@router.get("/")
async def get_users(
    role: Optional[str] = Query(None, description="Filter by role"),
    status: Optional[str] = Query(None, description="Filter by status"),
    department: Optional[str] = Query(None, description="Filter by employee department"),
    search: Optional[str] = Query(None, description="Search name, email, user code or NIC"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    current_user: User = Depends(require_roles("admin", "manager")),
    db: Session = Depends(get_db)
):
    query = db.query(User)
    if role:
        query = query.filter(User.role == role)
    if status:
        query = query.filter(User.status == status)
    if department:
        query = query.filter(User.department == department)
    if search:
        search_term = f"%{search}%"
        query = query.filter(
            or_(
                User.first_name.ilike(search_term),
                User.last_name.ilike(search_term),
                User.email.ilike(search_term),
                User.user_code.ilike(search_term),
                User.nic.ilike(search_term),
            )
        )

    users, total = paginate(query.order_by(User.created_at.desc(), User.id.desc()), page, limit)
    return page_envelope("users", [user_to_response(u) for u in users], total, page, limit)


@router.post("/", status_code=status.HTTP_201_CREATED)
async def create_user_account(
    data: AccountCreate,
    current_user: User = Depends(require_roles("admin", "manager")),
    db: Session = Depends(get_db)
):
    """Create a staff or customer account"""
    if data.role == "admin" and current_user.role != "admin":
        raise ValidationError("Only administrators can create admin accounts")

    try:
        user = create_user(db, data)
        db.commit()
        db.refresh(user)
        logger.info(f"User {user.user_code} ({user.role}) created by {current_user.user_code}")
        return {"success": True, "message": "User created successfully", "user": user_to_response(user)}
    except HTTPException as e:
        db.rollback()
        raise e
    except Exception as e:
        db.rollback()
        logger.error(f"Error creating user: {str(e)}")
        raise


@router.get("/stats/overview")
async def get_user_stats(
    current_user: User = Depends(require_roles("admin", "manager")),
    db: Session = Depends(get_db)
):
    now = datetime.utcnow()
    month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)

    by_role = dict(db.query(User.role, func.count(User.id)).group_by(User.role).all())
    by_status = dict(db.query(User.status, func.count(User.id)).group_by(User.status).all())

    return {
        "success": True,
        "stats": {
            "total_users": db.query(func.count(User.id)).scalar(),
            "active_users": by_status.get("active", 0),
            "new_users_this_month": db.query(func.count(User.id)).filter(User.created_at >= month_start).scalar(),
            "active_this_week": db.query(func.count(User.id)).filter(
                User.last_login >= now - timedelta(days=7)
            ).scalar(),
            "by_role": {role: by_role.get(role, 0) for role in ROLES},
            "by_status": {s: by_status.get(s, 0) for s in USER_STATUSES},
        },
    }


@router.get("/technicians/by-specialization")
async def get_technicians_by_specialization(
    specialization: Optional[str] = Query(None, description="Skill tag to match"),
    current_user: User = Depends(require_roles("admin", "manager", "service_advisor")),
    db: Session = Depends(get_db)
):
    if specialization and specialization not in SPECIALIZATIONS:
        raise ValidationError(f"Invalid specialization: {specialization}")

    technicians = db.query(User).filter(
        User.role == "technician",
        User.status == "active"
    ).order_by(User.first_name).all()

    if specialization:
        technicians = [t for t in technicians if specialization in (t.specializations or [])]
        return {
            "success": True,
            "count": len(technicians),
            "technicians": [user_to_response(t) for t in technicians],
        }

    grouped = {}
    for tech in technicians:
        for skill in tech.specializations or []:
            grouped.setdefault(skill, []).append(user_to_response(tech))
    return {"success": True, "specializations": grouped}


@router.get("/{user_id}")
async def get_user(
    user_id: int,
    current_user: User = Depends(require_roles("admin", "manager", "service_advisor")),
    db: Session = Depends(get_db)
):
    user = get_user_or_404(db, user_id)
    return {"success": True, "user": user_to_response(user)}


@router.patch("/{user_id}")
async def update_user(
    user_id: int,
    data: UserUpdate,
    current_user: User = Depends(require_roles("admin", "manager")),
    db: Session = Depends(get_db)
):
    user = get_user_or_404(db, user_id)
    new_role = data.role or user.role

    if new_role != user.role and "admin" in (new_role, user.role) and current_user.role != "admin":
        raise ValidationError("Only administrators can grant or revoke the admin role")

    # A role change must bring the details the new role requires
    if new_role != user.role:
        if new_role == "customer" and data.customer_details is None:
            raise ValidationError("customer_details are required for the customer role")
        if new_role not in ("customer", "admin") and data.employee_details is None and not user.department:
            raise ValidationError("employee_details are required for staff roles")
    if data.customer_details is not None and new_role != "customer":
        raise ValidationError("customer_details only apply to customers")
    if data.employee_details is not None and new_role == "customer":
        raise ValidationError("employee_details do not apply to customers")

    try:
        if data.email and data.email.lower() != user.email:
            ensure_unique_identity(db, email=data.email, exclude_id=user.id)
            user.email = data.email.lower()
            user.email_verified = False

        if new_role != user.role:
            if new_role == "customer":
                clear_employee_details(user)
                user.loyalty_points = user.loyalty_points or 0
                user.membership_tier = membership_tier_for(user.loyalty_points)
            user.role = new_role

        if data.profile:
            profile = data.profile
            if profile.first_name is not None:
                user.first_name = profile.first_name
            if profile.last_name is not None:
                user.last_name = profile.last_name
            if profile.phone_number is not None:
                user.phone_number = profile.phone_number
            if profile.address is not None:
                user.street = profile.address.street
                user.city = profile.address.city
                user.province = profile.address.province
                user.postal_code = profile.address.postal_code

        if data.preferences:
            user.preferences = data.preferences.model_dump()
        if data.customer_details:
            apply_customer_details(user, data.customer_details)
        if data.employee_details:
            apply_employee_details(db, user, data.employee_details)

        db.commit()
        db.refresh(user)
        logger.info(f"User {user.user_code} updated by {current_user.user_code}")
        return {"success": True, "message": "User updated successfully", "user": user_to_response(user)}
    except HTTPException as e:
        db.rollback()
        raise e
    except Exception as e:
        db.rollback()
        logger.error(f"Error updating user: {str(e)}")
        raise


@router.delete("/{user_id}")
async def delete_user(
    user_id: int,
    current_user: User = Depends(require_roles("admin")),
    db: Session = Depends(get_db)
):
    """Accounts are never removed; deleting terminates the account"""
    user = get_user_or_404(db, user_id)
    if user.id == current_user.id:
        raise ValidationError("You cannot delete your own account")

    user.status = "terminated"
    db.commit()
    logger.info(f"User {user.user_code} terminated by {current_user.user_code}")
    return {
        "success": True,
        "message": "User account terminated",
        "user": {"id": user.id, "user_code": user.user_code, "status": user.status},
    }


@router.patch("/{user_id}/status")
async def update_user_status(
    user_id: int,
    data: UserStatusUpdate,
    current_user: User = Depends(require_roles("admin", "manager")),
    db: Session = Depends(get_db)
):
    user = get_user_or_404(db, user_id)
    if user.id == current_user.id:
        raise ValidationError("You cannot change your own status")

    user.status = data.status
    db.commit()
    logger.info(
        f"User {user.user_code} status set to {data.status} by {current_user.user_code}"
        + (f": {data.reason}" if data.reason else "")
    )
    return {"success": True, "message": f"User status updated to {data.status}", "user": user_to_response(user)}


@router.patch("/{user_id}/reset-password")
async def admin_reset_password(
    user_id: int,
    data: AdminPasswordReset,
    current_user: User = Depends(require_roles("admin", "manager")),
    db: Session = Depends(get_db)
):
    user = get_user_or_404(db, user_id)
    user.hashed_password = get_password_hash(data.new_password)
    reset_login_attempts(user)
    db.commit()
    logger.info(f"Password of {user.user_code} reset by {current_user.user_code}")
    return {"success": True, "message": "Password reset successfully"}


@router.patch("/{user_id}/loyalty-points")
async def add_loyalty_points(
    user_id: int,
    data: LoyaltyPointsUpdate,
    current_user: User = Depends(require_roles("admin", "manager", "service_advisor")),
    db: Session = Depends(get_db)
):
    user = get_user_or_404(db, user_id)
    if user.role != "customer":
        raise ValidationError("Loyalty points can only be added to customers")

    user.loyalty_points = (user.loyalty_points or 0) + data.points
    user.membership_tier = membership_tier_for(user.loyalty_points)
    db.commit()
    logger.info(f"{data.points} loyalty points added to {user.user_code} by {current_user.user_code}")
    return {
        "success": True,
        "message": f"{data.points} loyalty points added",
        "customer_details": {
            "loyalty_points": user.loyalty_points,
            "membership_tier": user.membership_tier,
        },
    }


@router.patch("/{user_id}/certifications")
async def update_certifications(
    user_id: int,
    data: CertificationsUpdate,
    current_user: User = Depends(require_roles("admin", "manager")),
    db: Session = Depends(get_db)
):
    user = get_user_or_404(db, user_id)
    if not user.is_employee:
        raise ValidationError("Certifications can only be added to employees")

    replace_certifications(user, data.certifications)
    db.commit()
    db.refresh(user)
    return {"success": True, "message": "Certifications updated", "user": user_to_response(user)}
