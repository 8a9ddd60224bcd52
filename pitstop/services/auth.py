"""
Account creation, login with lockout, and the single-use email tokens.
"""
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional, Tuple

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from pitstop.config import settings
from pitstop.errors import Conflict, Forbidden, Locked, Unauthenticated, ValidationError
from pitstop.models import EmployeeCertification, User
from pitstop.schemas import AccountBase, EmployeeDetails, membership_tier_for
from pitstop.services.identifiers import next_employee_id, next_user_code
from pitstop.utils.security import generate_token, get_password_hash, hash_token, verify_password

logger = logging.getLogger(__name__)

users = User.__table__


def get_user_by_email(db: Session, email: str) -> Optional[User]:
    return db.query(User).filter(User.email == email.lower()).first()


def ensure_unique_identity(db: Session, email: Optional[str] = None, nic: Optional[str] = None,
                           exclude_id: Optional[int] = None):
    if email:
        query = db.query(User).filter(User.email == email.lower())
        if exclude_id:
            query = query.filter(User.id != exclude_id)
        if query.first():
            raise Conflict("User already exists with this email")
    if nic:
        query = db.query(User).filter(User.nic == nic)
        if exclude_id:
            query = query.filter(User.id != exclude_id)
        if query.first():
            raise Conflict("User already exists with this NIC")


def apply_employee_details(db: Session, user: User, details: EmployeeDetails):
    if user.employee_id is None:
        user.employee_id = next_employee_id(db, details.department)
    user.department = details.department
    user.specializations = list(details.specializations)
    user.join_date = details.join_date or user.join_date or datetime.utcnow().date()
    user.base_salary = Decimal(str(details.base_salary))
    user.commission_rate = Decimal(str(details.commission_rate))
    if details.certifications:
        replace_certifications(user, details.certifications)


def replace_certifications(user: User, certifications):
    user.certifications = [
        EmployeeCertification(
            name=cert.name,
            issued_by=cert.issued_by,
            issue_date=cert.issue_date,
            expiry_date=cert.expiry_date,
            certificate_number=cert.certificate_number,
        )
        for cert in certifications
    ]


def clear_employee_details(user: User):
    user.employee_id = None
    user.department = None
    user.specializations = None
    user.join_date = None
    user.base_salary = None
    user.commission_rate = None
    user.certifications = []


def apply_customer_details(user: User, details):
    contact = details.emergency_contact
    user.emergency_contact_name = contact.name
    user.emergency_contact_phone = contact.phone_number
    user.emergency_contact_relationship = contact.relationship


def create_user(db: Session, account: AccountBase) -> User:
    """Build (but do not commit) a user from a validated account variant"""
    ensure_unique_identity(db, email=account.email, nic=account.profile.nic)

    profile = account.profile
    user = User(
        user_code=next_user_code(db, account.role),
        email=account.email.lower(),
        hashed_password=get_password_hash(account.password),
        role=account.role,
        status="active",
        first_name=profile.first_name,
        last_name=profile.last_name,
        phone_number=profile.phone_number,
        street=profile.address.street,
        city=profile.address.city,
        province=profile.address.province,
        postal_code=profile.address.postal_code,
        nic=profile.nic,
        date_of_birth=profile.date_of_birth,
        preferences=account.preferences.model_dump() if account.preferences else None,
        login_attempts=0,
    )

    if account.role == "customer":
        user.loyalty_points = 0
        user.membership_tier = membership_tier_for(0)
        apply_customer_details(user, account.customer_details)
    elif getattr(account, "employee_details", None) is not None:
        apply_employee_details(db, user, account.employee_details)

    db.add(user)
    return user


def issue_email_verification(user: User) -> str:
    token = generate_token()
    user.email_verification_token = hash_token(token)
    user.email_verification_expires = datetime.utcnow() + timedelta(hours=settings.email_verification_hours)
    return token


def verify_email_token(db: Session, token: str) -> User:
    user = db.query(User).filter(
        User.email_verification_token == hash_token(token),
        User.email_verification_expires > datetime.utcnow()
    ).first()
    if not user:
        raise ValidationError("Invalid or expired verification token")

    user.email_verified = True
    user.email_verification_token = None
    user.email_verification_expires = None
    return user


def issue_password_reset(user: User) -> str:
    token = generate_token()
    user.password_reset_token = hash_token(token)
    user.password_reset_expires = datetime.utcnow() + timedelta(minutes=settings.password_reset_minutes)
    return token


def reset_password_with_token(db: Session, token: str, new_password: str) -> User:
    user = db.query(User).filter(
        User.password_reset_token == hash_token(token),
        User.password_reset_expires > datetime.utcnow()
    ).first()
    if not user:
        raise ValidationError("Invalid or expired reset token")

    user.hashed_password = get_password_hash(new_password)
    user.password_reset_token = None
    user.password_reset_expires = None
    reset_login_attempts(user)
    return user


# ============ Login and lockout ============

def reset_login_attempts(user: User):
    user.login_attempts = 0
    user.lock_until = None


def register_failed_login(db: Session, user: User) -> int:
    """
    Count a failed password; the account locks once attempts reach the limit.

    The counter is incremented in SQL, so failures arriving in parallel each
    count. Returns the new attempt count.
    """
    now = datetime.utcnow()
    if user.lock_until and user.lock_until <= now:
        # Previous lock has run out, start counting again
        db.execute(
            update(users)
            .where(users.c.id == user.id)
            .where(users.c.lock_until <= now)
            .values(login_attempts=0, lock_until=None)
        )

    attempts = db.execute(
        update(users)
        .where(users.c.id == user.id)
        .values(login_attempts=func.coalesce(users.c.login_attempts, 0) + 1)
        .returning(users.c.login_attempts)
    ).scalar_one()

    if attempts >= settings.max_login_attempts:
        db.execute(
            update(users)
            .where(users.c.id == user.id)
            .values(lock_until=now + timedelta(minutes=settings.lockout_minutes))
        )
        logger.warning(f"Account {user.user_code} locked after {attempts} failed logins")

    db.refresh(user)
    return attempts


def authenticate_user(db: Session, email: str, password: str) -> Tuple[Optional[User], Optional[Exception]]:
    """
    Check credentials and update the lockout counters.

    Returns (user, None) on success or (None, error) on failure. The caller
    commits in both cases so failed attempts are persisted, then raises the
    error.
    """
    user = get_user_by_email(db, email)
    if not user:
        return None, Unauthenticated("Invalid credentials")

    if user.is_locked:
        logger.warning(f"Login attempt on locked account {user.user_code}")
        return None, Locked()

    if user.status != "active":
        return None, Forbidden(f"Account is {user.status}. Please contact support.")

    if not verify_password(password, user.hashed_password):
        attempts = register_failed_login(db, user)
        logger.warning(f"Failed login for {user.user_code} ({attempts} attempts)")
        return None, Unauthenticated("Invalid credentials")

    reset_login_attempts(user)
    user.last_login = datetime.utcnow()
    return user, None


def change_password(user: User, current_password: str, new_password: str):
    if not verify_password(current_password, user.hashed_password):
        raise ValidationError("Current password is incorrect")
    if current_password == new_password:
        raise ValidationError("New password must be different from current password")
    user.hashed_password = get_password_hash(new_password)
