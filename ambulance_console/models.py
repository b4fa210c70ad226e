from datetime import datetime, timezone
from enum import Enum
from typing import Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


PHONE_PATTERN = r"^\+?[0-9]{10,15}$"
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


def naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Offset-aware timestamps become naive UTC; naive ones are taken as UTC already."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


# ============================================
# Enumerations
# ============================================
class RequestStatus(str, Enum):
    PENDING = "PENDING"
    DISPATCHED = "DISPATCHED"
    IN_PROGRESS = "IN_PROGRESS"
    ARRIVED = "ARRIVED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


TERMINAL_STATUSES = frozenset({RequestStatus.COMPLETED, RequestStatus.CANCELLED})


class AmbulanceStatus(str, Enum):
    AVAILABLE = "AVAILABLE"
    DISPATCHED = "DISPATCHED"
    ON_DUTY = "ON_DUTY"
    MAINTENANCE = "MAINTENANCE"
    OUT_OF_SERVICE = "OUT_OF_SERVICE"
    UNAVAILABLE = "UNAVAILABLE"


class ServiceStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    ARRIVED = "ARRIVED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class Role(str, Enum):
    USER = "USER"
    DISPATCHER = "DISPATCHER"
    ADMIN = "ADMIN"


class WireModel(BaseModel):
    """Base for everything that crosses the wire in camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


# ============================================
# 1. User - Console account
# ============================================
class User(WireModel):
    id: Optional[int] = None
    username: str
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone_number: Optional[str] = None
    role: Role = Role.USER
    enabled: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class SessionUser(WireModel):
    username: str
    role: Role = Role.USER


class AuthResponse(WireModel):
    token: str
    username: str
    role: Role = Role.USER


# ============================================
# 2. AmbulanceData - Fleet member
# ============================================
class AmbulanceData(WireModel):
    id: Optional[int] = None
    license_plate: Optional[str] = None
    driver_name: Optional[str] = None
    current_location: Optional[str] = None
    location: Optional[str] = None
    status: Optional[AmbulanceStatus] = None
    availability: Optional[AmbulanceStatus] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def effective_status(self) -> Optional[AmbulanceStatus]:
        return self.status or self.availability


# ============================================
# 3. RequestStatusHistory - Append-only status log
# ============================================
class RequestStatusHistory(WireModel):
    id: Optional[int] = None
    old_status: Optional[RequestStatus] = None
    new_status: RequestStatus
    notes: Optional[str] = None
    changed_by: Optional[str] = None
    created_at: datetime


# ============================================
# 4. EmergencyRequest - Transport request
# ============================================
class EmergencyRequest(WireModel):
    id: Optional[int] = None
    user: Optional[User] = None
    user_name: str = ""
    patient_name: str = ""
    user_contact: str = ""
    location: str = ""
    emergency_description: str = ""
    medical_notes: Optional[str] = None
    ambulance: Optional[AmbulanceData] = None
    status: RequestStatus = RequestStatus.PENDING
    request_time: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    status_history: List[RequestStatusHistory] = Field(default_factory=list)
    # soft-delete flag from the backend; not enforced here
    deleted: Optional[bool] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


# ============================================
# 5. Patient - Patient registry
# ============================================
class Patient(WireModel):
    id: Optional[int] = None
    name: str
    contact: str = ""
    medical_notes: str = ""
    deleted: Optional[bool] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# ============================================
# 6. ServiceHistory - Closed service cycle
# ============================================
class ServiceHistory(WireModel):
    id: Optional[int] = None
    request_id: Optional[int] = None
    ambulance_id: Optional[int] = None
    patient_id: Optional[int] = None
    status: ServiceStatus = ServiceStatus.PENDING
    notes: str = ""
    arrival_time: Optional[datetime] = None
    completion_time: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def duration_minutes(self) -> Optional[int]:
        if not self.arrival_time or not self.completion_time:
            return None
        return round((self.completion_time - self.arrival_time).total_seconds() / 60)


T = TypeVar("T")


class PaginatedResponse(WireModel, Generic[T]):
    content: List[T] = Field(default_factory=list)
    total_elements: int = 0
    total_pages: int = 0
    size: int = 0
    number: int = 0


# ============================================
# Form Schemas (validated before anything is sent)
# ============================================
class LoginForm(WireModel):
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)
    remember_me: bool = False


class RegisterForm(WireModel):
    username: str = Field(min_length=3, max_length=20)
    first_name: str = Field(min_length=1, max_length=50)
    last_name: str = Field(min_length=1, max_length=50)
    email: str = Field(pattern=EMAIL_PATTERN)
    password: str = Field(min_length=6)
    confirm_password: str
    phone_number: str = Field(pattern=PHONE_PATTERN)

    @model_validator(mode="after")
    def passwords_match(self):
        if self.password != self.confirm_password:
            raise ValueError("Passwords don't match")
        return self

    def to_wire(self) -> dict:
        data = super().to_wire()
        data.pop("confirmPassword", None)
        return data


class EmergencyRequestCreate(WireModel):
    user_name: str = ""
    patient_name: str = Field(min_length=2)
    user_contact: str = Field(pattern=PHONE_PATTERN)
    location: str = Field(min_length=5)
    emergency_description: str = Field(max_length=255)
    medical_notes: str = ""


class AmbulanceCreate(WireModel):
    license_plate: str = Field(min_length=1)
    driver_name: str = Field(min_length=1)
    current_location: str = ""
    status: AmbulanceStatus = AmbulanceStatus.AVAILABLE


class PatientCreate(WireModel):
    name: str = Field(min_length=1)
    contact: str = ""
    medical_notes: str = ""


class RequestStatusUpdate(WireModel):
    status: RequestStatus
    notes: Optional[str] = None


class ServiceStatusUpdate(WireModel):
    status: ServiceStatus
    notes: Optional[str] = None


class AmbulanceStatusUpdate(WireModel):
    status: AmbulanceStatus


class AssignAmbulance(WireModel):
    ambulance_id: int


class PasswordChange(WireModel):
    current_password: str = Field(min_length=1)
    new_password: str = Field(min_length=6)
