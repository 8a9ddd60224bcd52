import re
from datetime import date, datetime
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, EmailStr, Field, field_validator

ROLES = ("customer", "technician", "service_advisor", "manager", "admin", "cashier")
USER_STATUSES = ("active", "inactive", "suspended", "terminated")
PROVINCES = (
    "Western", "Central", "Southern", "Eastern", "Northern",
    "North Central", "North Western", "Sabaragamuwa", "Uva",
)
DEPARTMENTS = (
    "mechanical", "electrical", "bodywork", "detailing",
    "customer_service", "management", "front_desk",
)
SPECIALIZATIONS = (
    "engine_repair", "brake_systems", "electrical_systems", "air_conditioning",
    "transmission", "suspension", "bodywork", "painting", "detailing",
    "diagnostics", "hybrid_electric",
)
RELATIONSHIPS = ("spouse", "parent", "sibling", "child", "friend", "other")

PHONE_PATTERN = re.compile(r"^(\+94|0)[0-9]{9}$")
NIC_PATTERN = re.compile(r"^([0-9]{9}[vVxX]|[0-9]{12})$")
POSTAL_CODE_PATTERN = re.compile(r"^[0-9]{5}$")
MINIMUM_AGE = 16


def normalize_phone(value: str) -> str:
    """Validate a Sri Lankan number and store it in +94 form"""
    value = re.sub(r"[\s-]", "", value or "")
    if not PHONE_PATTERN.match(value):
        raise ValueError("Please enter a valid Sri Lankan phone number")
    if value.startswith("0"):
        value = "+94" + value[1:]
    return value


def membership_tier_for(points: int) -> str:
    if points >= 10000:
        return "platinum"
    if points >= 5000:
        return "gold"
    if points >= 2000:
        return "silver"
    return "bronze"


# ============ Profile ============

class Address(BaseModel):
    street: str = Field(min_length=1, max_length=200)
    city: str = Field(min_length=1, max_length=50)
    province: Literal[PROVINCES]
    postal_code: str

    @field_validator('postal_code')
    @classmethod
    def check_postal_code(cls, v):
        if not POSTAL_CODE_PATTERN.match(v.strip()):
            raise ValueError("Postal code must be 5 digits")
        return v.strip()


class Profile(BaseModel):
    first_name: str = Field(min_length=2, max_length=50)
    last_name: str = Field(min_length=2, max_length=50)
    phone_number: str
    address: Address
    nic: str
    date_of_birth: date

    @field_validator('first_name', 'last_name', mode='before')
    @classmethod
    def strip_names(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator('phone_number')
    @classmethod
    def check_phone(cls, v):
        return normalize_phone(v)

    @field_validator('nic')
    @classmethod
    def check_nic(cls, v):
        v = v.strip()
        if not NIC_PATTERN.match(v):
            raise ValueError("Please enter a valid NIC number (9 digits + V/X or 12 digits)")
        return v.upper()

    @field_validator('date_of_birth')
    @classmethod
    def check_age(cls, v):
        today = date.today()
        try:
            cutoff = today.replace(year=today.year - MINIMUM_AGE)
        except ValueError:
            # 29 February
            cutoff = today.replace(year=today.year - MINIMUM_AGE, day=28)
        if v > cutoff:
            raise ValueError(f"User must be at least {MINIMUM_AGE} years old")
        return v


class ProfileUpdate(BaseModel):
    first_name: Optional[str] = Field(None, min_length=2, max_length=50)
    last_name: Optional[str] = Field(None, min_length=2, max_length=50)
    phone_number: Optional[str] = None
    address: Optional[Address] = None

    @field_validator('phone_number')
    @classmethod
    def check_phone(cls, v):
        return normalize_phone(v) if v is not None else v


class Preferences(BaseModel):
    language: Literal["english", "sinhala", "tamil"] = "english"
    email_notifications: bool = True
    sms_notifications: bool = True
    push_notifications: bool = True
    marketing: bool = False


# ============ Role details ============

class EmergencyContact(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    phone_number: str
    relationship: Literal[RELATIONSHIPS]

    @field_validator('phone_number')
    @classmethod
    def check_phone(cls, v):
        return normalize_phone(v)


class CustomerDetails(BaseModel):
    emergency_contact: EmergencyContact


class Certification(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    issued_by: Optional[str] = None
    issue_date: Optional[date] = None
    expiry_date: Optional[date] = None
    certificate_number: Optional[str] = None


class EmployeeDetails(BaseModel):
    department: Literal[DEPARTMENTS]
    specializations: List[Literal[SPECIALIZATIONS]] = []
    join_date: Optional[date] = None
    base_salary: float = Field(ge=0)
    commission_rate: float = Field(0, ge=0, le=100)
    certifications: List[Certification] = []


# ============ Account variants ============

class AccountBase(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8)
    profile: Profile
    preferences: Optional[Preferences] = None


class CustomerAccount(AccountBase):
    role: Literal["customer"]
    customer_details: CustomerDetails


class EmployeeAccount(AccountBase):
    role: Literal["technician", "service_advisor", "manager", "cashier"]
    employee_details: EmployeeDetails


class AdminAccount(AccountBase):
    role: Literal["admin"]
    employee_details: Optional[EmployeeDetails] = None


# Required fields follow the role: customers carry an emergency contact,
# staff carry department and salary details
AccountCreate = Annotated[
    Union[CustomerAccount, EmployeeAccount, AdminAccount],
    Field(discriminator="role"),
]


class CustomerRegistration(AccountBase):
    role: Literal["customer"] = "customer"
    customer_details: CustomerDetails


class UserUpdate(BaseModel):
    email: Optional[EmailStr] = None
    role: Optional[Literal[ROLES]] = None
    profile: Optional[ProfileUpdate] = None
    preferences: Optional[Preferences] = None
    customer_details: Optional[CustomerDetails] = None
    employee_details: Optional[EmployeeDetails] = None


class SelfProfileUpdate(BaseModel):
    profile: Optional[ProfileUpdate] = None
    preferences: Optional[Preferences] = None
    customer_details: Optional[CustomerDetails] = None


# ============ Auth ============

class UserLogin(BaseModel):
    email: EmailStr
    password: str


class EmailVerification(BaseModel):
    token: str


class PasswordReset(BaseModel):
    email: EmailStr


class PasswordResetConfirm(BaseModel):
    token: str
    new_password: str = Field(min_length=8)


class PasswordChange(BaseModel):
    current_password: str
    new_password: str = Field(min_length=8)


class AdminPasswordReset(BaseModel):
    new_password: str = Field(min_length=8)


class UserStatusUpdate(BaseModel):
    status: Literal[USER_STATUSES]
    reason: Optional[str] = None


class LoyaltyPointsUpdate(BaseModel):
    points: int = Field(gt=0)
    reason: Optional[str] = None


class CertificationsUpdate(BaseModel):
    certifications: List[Certification]


class UserInfo(BaseModel):
    """User info returned with login token"""
    id: int
    user_code: str
    email: str
    role: str
    status: str
    first_name: str
    last_name: str
    email_verified: bool
    last_login: Optional[datetime] = None


class Token(BaseModel):
    success: bool = True
    access_token: str
    token_type: str
    expires_in: int  # Access token expiry in seconds
    user: UserInfo
