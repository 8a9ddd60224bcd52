from datetime import timedelta
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session
import logging

from pitstop.api.users import user_to_response
from pitstop.config import settings
from pitstop.database import get_db
from pitstop.models import User
from pitstop.schemas import (
    CustomerRegistration, EmailVerification, PasswordChange, PasswordReset, PasswordResetConfirm,
    SelfProfileUpdate, UserLogin
)
from pitstop.services.auth import (
    apply_customer_details, authenticate_user, change_password, create_user, get_user_by_email,
    issue_email_verification, issue_password_reset, reset_password_with_token, verify_email_token
)
from pitstop.services.dependency import get_current_user
from pitstop.services.email import EmailService, get_email_service
from pitstop.utils.rate_limiter import RateLimits, limiter
from pitstop.utils.security import create_access_token

router = APIRouter()
logger = logging.getLogger(__name__)


def token_response(user: User) -> dict:
    expires_minutes = settings.access_token_expire_minutes
    access_token = create_access_token(
        data={"sub": str(user.id), "role": user.role},
        expires_delta=timedelta(minutes=expires_minutes)
    )
    return {
        "success": True,
        "access_token": access_token,
        "token_type": "bearer",
        "expires_in": expires_minutes * 60,
        "user": user_to_response(user),
    }


@router.post("/register", status_code=status.HTTP_201_CREATED)
@limiter.limit(RateLimits.REGISTER)
async def register(
    request: Request,
    data: CustomerRegistration,
    db: Session = Depends(get_db),
    email_service: EmailService = Depends(get_email_service)
):
    """Customer self-registration. Staff accounts are created by administrators."""
    try:
        user = create_user(db, data)
        token = issue_email_verification(user)
        db.commit()
        db.refresh(user)
    except HTTPException as e:
        db.rollback()
        raise e
    except Exception as e:
        db.rollback()
        logger.error(f"Error registering user: {str(e)}")
        raise

    logger.info(f"Customer {user.user_code} registered")
    email_service.send_verification_email(user.email, user.first_name, token)

    response = token_response(user)
    response["message"] = "Registration successful. Please check your email to verify your account."
    return response


@router.post("/login")
@limiter.limit(RateLimits.LOGIN)
async def login(request: Request, credentials: UserLogin, db: Session = Depends(get_db)):
    user, error = authenticate_user(db, credentials.email, credentials.password)
    # Persist attempt counters whether or not the login succeeded
    db.commit()
    if error is not None:
        raise error

    logger.info(f"User {user.user_code} logged in")
    response = token_response(user)
    response["message"] = "Login successful"
    return response


@router.post("/verify-email")
@limiter.limit(RateLimits.VERIFY_EMAIL)
async def verify_email(request: Request, data: EmailVerification, db: Session = Depends(get_db)):
    user = verify_email_token(db, data.token)
    db.commit()
    logger.info(f"Email verified for {user.user_code}")
    return {"success": True, "message": "Email verified successfully"}


@router.post("/forgot-password")
@limiter.limit(RateLimits.PASSWORD_RESET)
async def forgot_password(
    request: Request,
    data: PasswordReset,
    db: Session = Depends(get_db),
    email_service: EmailService = Depends(get_email_service)
):
    """Always answers the same way so the endpoint cannot be used to probe for accounts"""
    user = get_user_by_email(db, data.email)
    if user and user.status == "active":
        token = issue_password_reset(user)
        db.commit()
        email_service.send_password_reset_email(user.email, user.first_name, token)
        logger.info(f"Password reset requested for {user.user_code}")

    return {
        "success": True,
        "message": "If an account exists with this email, a password reset link has been sent",
    }


@router.post("/reset-password")
@limiter.limit(RateLimits.PASSWORD_RESET)
async def reset_password(request: Request, data: PasswordResetConfirm, db: Session = Depends(get_db)):
    user = reset_password_with_token(db, data.token, data.new_password)
    db.commit()
    logger.info(f"Password reset completed for {user.user_code}")
    return {"success": True, "message": "Password reset successful"}


@router.get("/profile")
async def get_profile(current_user: User = Depends(get_current_user)):
    return {"success": True, "user": user_to_response(current_user)}


@router.patch("/profile")
async def update_profile(
    data: SelfProfileUpdate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    if data.customer_details is not None and current_user.role != "customer":
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="customer_details only apply to customers")

    if data.profile:
        profile = data.profile
        if profile.first_name is not None:
            current_user.first_name = profile.first_name
        if profile.last_name is not None:
            current_user.last_name = profile.last_name
        if profile.phone_number is not None:
            current_user.phone_number = profile.phone_number
            current_user.phone_verified = False
        if profile.address is not None:
            current_user.street = profile.address.street
            current_user.city = profile.address.city
            current_user.province = profile.address.province
            current_user.postal_code = profile.address.postal_code
    if data.preferences:
        current_user.preferences = data.preferences.model_dump()
    if data.customer_details:
        apply_customer_details(current_user, data.customer_details)

    db.commit()
    db.refresh(current_user)
    return {"success": True, "message": "Profile updated successfully", "user": user_to_response(current_user)}


@router.patch("/change-password")
async def update_password(
    data: PasswordChange,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    change_password(current_user, data.current_password, data.new_password)
    db.commit()
    logger.info(f"Password changed by {current_user.user_code}")
    return {"success": True, "message": "Password changed successfully"}
