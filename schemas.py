import re
from pydantic import BaseModel, EmailStr, Field, field_validator
from typing import Optional, List, Dict, Any
import datetime as dt
from datetime import datetime, date, timezone
from enum import Enum
from models import (
    AppointmentStatus, AttachmentEntity, CompanyStatus, EntryType,
    PaymentMethod, RoleName, StockMovementType, TransactionType
)


def only_digits(value: Optional[str]) -> str:
    return re.sub(r"\D", "", value or "")


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Store datetimes as naive UTC; aware inputs are converted first."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def plain_values(data: dict) -> dict:
    """Replace enum members with their values before assigning to ORM rows"""
    return {key: (value.value if isinstance(value, Enum) else value) for key, value in data.items()}


def _valid_phone(value: str, message: str) -> str:
    digits = only_digits(value)
    if not 10 <= len(digits) <= 13:
        raise ValueError(message)
    return digits


def _optional_email(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip().lower()
    if value and not re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", value):
        raise ValueError("E-mail inválido.")
    return value


# ==================== AUTH ====================

class LoginRequest(BaseModel):
    email: str
    password: str

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        return v.strip().lower()


class RegisterRequest(BaseModel):
    """Self-service signup: creates company, admin user and trial"""
    email: EmailStr
    password: str = Field(..., min_length=6)
    full_name: str = Field(..., min_length=1, max_length=150)
    user_phone: str
    company_name: str = Field(..., min_length=1, max_length=150)
    company_cnpj: Optional[str] = None
    company_phone: str
    company_address: Optional[str] = None

    @field_validator("email")
    @classmethod
    def lower_email(cls, v: str) -> str:
        return v.strip().lower()

    @field_validator("user_phone")
    @classmethod
    def check_user_phone(cls, v: str) -> str:
        return _valid_phone(v, "Telefone do responsável inválido.")

    @field_validator("company_phone")
    @classmethod
    def check_company_phone(cls, v: str) -> str:
        return _valid_phone(v, "Telefone da empresa inválido.")

    @field_validator("company_cnpj")
    @classmethod
    def check_cnpj(cls, v: Optional[str]) -> Optional[str]:
        digits = only_digits(v)
        if not digits:
            return None
        if len(digits) != 14:
            raise ValueError("CNPJ inválido.")
        return digits


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str = Field(..., min_length=6)


class InviteRequest(BaseModel):
    full_name: Optional[str] = None
    email: EmailStr
    phone: Optional[str] = None
    password: str = Field(..., min_length=6)

    @field_validator("email")
    @classmethod
    def lower_email(cls, v: str) -> str:
        return v.strip().lower()


class ProfileUpdate(BaseModel):
    full_name: Optional[str] = Field(None, max_length=150)
    email: Optional[EmailStr] = None


class FileUpload(BaseModel):
    """Base64 data URL upload (data:<mime>;base64,<payload>)"""
    file_name: str = Field(..., min_length=1, max_length=255)
    data_url: str = Field(..., min_length=1)


# ==================== CLIENTS & PETS ====================

class ClientCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=150)
    email: Optional[str] = ""
    phone: Optional[str] = None
    address: Optional[str] = None

    @field_validator("email")
    @classmethod
    def check_email(cls, v: Optional[str]) -> Optional[str]:
        return _optional_email(v)


class ClientUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=150)
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None

    @field_validator("email")
    @classmethod
    def check_email(cls, v: Optional[str]) -> Optional[str]:
        return _optional_email(v)


class PetCreate(BaseModel):
    client_id: int
    name: str = Field(..., min_length=1, max_length=100)
    species: str = Field(..., min_length=1, max_length=50)
    breed: Optional[str] = None
    birth_date: Optional[date] = None


class PetUpdate(BaseModel):
    client_id: Optional[int] = None
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    species: Optional[str] = Field(None, min_length=1, max_length=50)
    breed: Optional[str] = None
    birth_date: Optional[date] = None


# ==================== CATALOG ====================

class ServiceCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=150)
    category: str = Field(..., min_length=1, max_length=100)
    duration_minutes: int = Field(30, ge=1, le=1440)
    price: float = Field(0, ge=0)
    commission_pct: float = Field(0, ge=0, le=100)


class ServiceUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=150)
    category: Optional[str] = Field(None, min_length=1, max_length=100)
    duration_minutes: Optional[int] = Field(None, ge=1, le=1440)
    price: Optional[float] = Field(None, ge=0)
    commission_pct: Optional[float] = Field(None, ge=0, le=100)


class ProductCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=150)
    category: str = Field(..., min_length=1, max_length=100)
    stock: int = Field(0, ge=0)
    min_stock: int = Field(0, ge=0)
    price: float = Field(0, ge=0)
    unit: str = Field("un", min_length=1, max_length=20)


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=150)
    category: Optional[str] = Field(None, min_length=1, max_length=100)
    stock: Optional[int] = Field(None, ge=0)
    min_stock: Optional[int] = Field(None, ge=0)
    price: Optional[float] = Field(None, ge=0)
    unit: Optional[str] = Field(None, min_length=1, max_length=20)


class StockMovementCreate(BaseModel):
    """in/out move stock by quantity; adjustment sets the counted stock"""
    movement_type: StockMovementType
    quantity: int = Field(..., ge=0)
    notes: Optional[str] = None


# ==================== APPOINTMENTS & CLINICAL ====================

class AppointmentCreate(BaseModel):
    client_id: int
    pet_id: int
    service_id: int
    scheduled_at: datetime
    duration_minutes: int = Field(30, ge=1, le=1440)
    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    vet_name: Optional[str] = Field(None, max_length=150)
    notes: Optional[str] = None

    @field_validator("scheduled_at")
    @classmethod
    def normalize_scheduled_at(cls, v: datetime) -> datetime:
        return to_naive_utc(v)


class AppointmentUpdate(BaseModel):
    client_id: Optional[int] = None
    pet_id: Optional[int] = None
    service_id: Optional[int] = None
    scheduled_at: Optional[datetime] = None
    duration_minutes: Optional[int] = Field(None, ge=1, le=1440)
    status: Optional[AppointmentStatus] = None
    vet_name: Optional[str] = Field(None, max_length=150)
    notes: Optional[str] = None

    @field_validator("scheduled_at")
    @classmethod
    def normalize_scheduled_at(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(v)


class MedicalRecordCreate(BaseModel):
    pet_id: int
    appointment_id: Optional[int] = None
    record_date: date = Field(default_factory=date.today)
    weight_kg: Optional[float] = Field(None, ge=0, le=200)
    temperature_c: Optional[float] = Field(None, ge=30, le=45)
    diagnosis: Optional[str] = None
    treatment: Optional[str] = None
    notes: Optional[str] = None


class MedicalRecordUpdate(BaseModel):
    pet_id: Optional[int] = None
    appointment_id: Optional[int] = None
    record_date: Optional[date] = None
    weight_kg: Optional[float] = Field(None, ge=0, le=200)
    temperature_c: Optional[float] = Field(None, ge=30, le=45)
    diagnosis: Optional[str] = None
    treatment: Optional[str] = None
    notes: Optional[str] = None


class ProcessDueRequest(BaseModel):
    limit: int = Field(50, ge=1, le=200)


# ==================== FINANCIAL ====================

class TransactionCreate(BaseModel):
    type: TransactionType
    date: dt.date
    description: str = Field(..., min_length=1, max_length=255)
    category: Optional[str] = Field(None, max_length=100)
    value: float = Field(..., ge=0)
    status: str = Field("paid", max_length=20)


class TransactionUpdate(BaseModel):
    type: Optional[TransactionType] = None
    date: Optional[dt.date] = None
    description: Optional[str] = Field(None, min_length=1, max_length=255)
    category: Optional[str] = Field(None, max_length=100)
    value: Optional[float] = Field(None, ge=0)
    status: Optional[str] = Field(None, max_length=20)


class CashEntryCreate(BaseModel):
    entry_type: EntryType
    amount: float = Field(..., gt=0)
    description: str = Field(..., min_length=1, max_length=255)
    payment_method: PaymentMethod = PaymentMethod.CASH
    occurred_at: Optional[datetime] = None

    @field_validator("occurred_at")
    @classmethod
    def normalize_occurred_at(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(v)


class AppointmentPaymentRequest(BaseModel):
    amount: Optional[float] = Field(None, gt=0)
    payment_method: PaymentMethod = PaymentMethod.CASH
    paid_at: Optional[datetime] = None
    description: Optional[str] = Field(None, max_length=255)

    @field_validator("paid_at")
    @classmethod
    def normalize_paid_at(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(v)


# ==================== SETTINGS ====================

class CompanySettingsUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=150)
    cnpj: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    contact_email: Optional[str] = None
    website: Optional[str] = Field(None, max_length=255)
    hours: Optional[str] = Field(None, max_length=255)

    @field_validator("cnpj")
    @classmethod
    def check_cnpj(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        digits = only_digits(v)
        if digits and len(digits) != 14:
            raise ValueError("CNPJ inválido.")
        return digits or None

    @field_validator("contact_email")
    @classmethod
    def check_contact_email(cls, v: Optional[str]) -> Optional[str]:
        return _optional_email(v)


class NotificationSettingsUpdate(BaseModel):
    reminders: Optional[bool] = None
    low_stock: Optional[bool] = None
    payment_receipt: Optional[bool] = None
    pet_birthday: Optional[bool] = None


class AppearanceSettingsUpdate(BaseModel):
    theme: Optional[str] = Field(None, pattern="^(light|dark|system)$")
    primary_color: Optional[str] = Field(None, min_length=1, max_length=30)
    logo_url: Optional[str] = Field(None, max_length=255)


class SecuritySettingsUpdate(BaseModel):
    two_factor_enabled: bool


class UserRoleUpdate(BaseModel):
    role: RoleName

    @field_validator("role")
    @classmethod
    def no_superadmin(cls, v: RoleName) -> RoleName:
        if v == RoleName.SUPERADMIN:
            raise ValueError("Papel inválido.")
        return v


class PermissionEntry(BaseModel):
    module: str
    can_view: bool = False
    can_create: bool = False
    can_edit: bool = False
    can_delete: bool = False


class PermissionsUpdate(BaseModel):
    permissions: List[PermissionEntry]


# ==================== ATTACHMENTS ====================

class AttachmentCreate(FileUpload):
    entity_type: AttachmentEntity
    entity_id: int


# ==================== PLATFORM ADMIN ====================

class PlanUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=50)
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    trial_days: Optional[int] = Field(None, ge=0)
    max_users: Optional[int] = Field(None, ge=0)
    max_pets: Optional[int] = Field(None, ge=0)
    features: Optional[Dict[str, Any]] = None
    is_active: Optional[bool] = None


class AdminCompanyCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=150)
    cnpj: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    status: CompanyStatus = CompanyStatus.ACTIVE
    plan_id: Optional[int] = None
    trial_ends_at: Optional[datetime] = None

    @field_validator("cnpj")
    @classmethod
    def check_cnpj(cls, v: Optional[str]) -> Optional[str]:
        digits = only_digits(v)
        if not digits:
            return None
        if len(digits) != 14:
            raise ValueError("CNPJ inválido.")
        return digits

    @field_validator("trial_ends_at")
    @classmethod
    def normalize_trial_end(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(v)


class AdminCompanyUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=150)
    phone: Optional[str] = None
    address: Optional[str] = None
    status: Optional[CompanyStatus] = None
    plan_id: Optional[int] = None
    trial_ends_at: Optional[datetime] = None

    @field_validator("trial_ends_at")
    @classmethod
    def normalize_trial_end(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(v)
