import logging
from typing import Iterable, Optional

from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from pitstop.database import get_db
from pitstop.errors import Forbidden, Locked, Unauthenticated
from pitstop.models import User
from pitstop.utils.security import verify_token

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)

EMPLOYEE_ROLES = ("technician", "service_advisor", "manager", "admin", "cashier")
STAFF_ROLES = ("service_advisor", "manager", "admin", "cashier")


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db)
) -> User:
    """Resolve the bearer token to an active, unlocked user"""
    if credentials is None or not credentials.credentials:
        raise Unauthenticated("No token provided, authorization denied")

    subject = verify_token(credentials.credentials)
    if not subject or not str(subject).isdigit():
        raise Unauthenticated("Invalid or expired token")

    user = db.query(User).filter(User.id == int(subject)).first()
    if not user:
        raise Unauthenticated("User not found")

    if user.status != "active":
        logger.warning(f"Blocked request from {user.status} account {user.user_code}")
        raise Forbidden(f"Account is {user.status}")

    if user.is_locked:
        logger.warning(f"Blocked request from locked account {user.user_code}")
        raise Locked()

    return user


def require_roles(*roles: str):
    """Dependency that lets through only users holding one of `roles`"""
    def role_checker(current_user: User = Depends(get_current_user)) -> User:
        if current_user.role not in roles:
            raise Forbidden(f"Role '{current_user.role}' is not authorized to access this resource")
        return current_user
    return role_checker


def require_roles_or_department(roles: Iterable[str], departments: Iterable[str]):
    """Like require_roles, but an employee in one of `departments` is also allowed"""
    roles = tuple(roles)
    departments = tuple(departments)

    def checker(current_user: User = Depends(get_current_user)) -> User:
        if current_user.role in roles:
            return current_user
        if current_user.is_employee and current_user.department in departments:
            return current_user
        raise Forbidden(f"Role '{current_user.role}' is not authorized to access this resource")
    return checker


def ensure_owner_or_roles(user: User, owner_id: Optional[int], roles: Iterable[str],
                          detail: str = "Not authorized to access this resource"):
    """Ownership check for orchestrators once the resource is loaded"""
    if user.role in roles or (owner_id is not None and user.id == owner_id):
        return
    raise Forbidden(detail)


def require_employee(current_user: User = Depends(get_current_user)) -> User:
    if current_user.role not in EMPLOYEE_ROLES:
        raise Forbidden("Only employees can access this resource")
    return current_user
