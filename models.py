from sqlalchemy import Column, Integer, String, Float, DateTime, ForeignKey, Boolean, Text, UniqueConstraint, Index, Date
from sqlalchemy.orm import relationship
from datetime import datetime
import enum
from database import Base


class CompanyStatus(str, enum.Enum):
    TRIAL = "trial"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"


class RoleName(str, enum.Enum):
    SUPERADMIN = "superadmin"
    ADMIN = "admin"
    SUPERVISOR = "supervisor"
    ATENDENTE = "atendente"
    USUARIO = "usuario"


class AppointmentStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ReminderStatus(str, enum.Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ReminderChannel(str, enum.Enum):
    EMAIL = "email"
    WHATSAPP = "whatsapp"


class TransactionType(str, enum.Enum):
    REVENUE = "revenue"
    EXPENSE = "expense"


class EntryType(str, enum.Enum):
    INFLOW = "inflow"
    OUTFLOW = "outflow"


class PaymentMethod(str, enum.Enum):
    CASH = "cash"
    PIX = "pix"
    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"
    BANK_TRANSFER = "bank_transfer"
    OTHER = "other"


class StockMovementType(str, enum.Enum):
    IN = "in"
    OUT = "out"
    ADJUSTMENT = "adjustment"


class AttachmentEntity(str, enum.Enum):
    MEDICAL_RECORD = "medical_record"
    APPOINTMENT = "appointment"
    TRANSACTION = "transaction"
    CLIENT = "client"
    PET = "pet"


# =============================================================================
# PLATFORM: PLANS, COMPANIES, USERS
# =============================================================================

class Plan(Base):
    """Subscription plan managed by the superadmin console"""
    __tablename__ = "plans"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(50), unique=True, nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Float, nullable=False, default=0.0)  # Monthly price (BRL)
    trial_days = Column(Integer, nullable=False, default=0)
    max_users = Column(Integer, nullable=True)  # None = unlimited
    max_pets = Column(Integer, nullable=True)
    features = Column(Text, nullable=True)  # JSON object: module flags and limits
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<Plan {self.name} ({self.price})>"


class Company(Base):
    """Tenant: a clinic or petshop"""
    __tablename__ = "companies"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(150), nullable=False)
    cnpj = Column(String(14), unique=True, nullable=True)  # Digits only
    phone = Column(String(20), nullable=True)
    address = Column(Text, nullable=True)
    contact_email = Column(String(150), nullable=True)
    website = Column(String(255), nullable=True)
    hours = Column(String(255), nullable=True)

    # Subscription
    status = Column(String(20), default=CompanyStatus.TRIAL.value, nullable=False, index=True)
    current_plan_id = Column(Integer, ForeignKey("plans.id", ondelete='SET NULL'), nullable=True, index=True)
    trial_ends_at = Column(DateTime, nullable=True)
    timezone = Column(String(50), default="America/Sao_Paulo", nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    plan = relationship("Plan")

    def __repr__(self):
        return f"<Company {self.name} ({self.status})>"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(150), unique=True, nullable=False, index=True)
    hashed_password = Column(String(255), nullable=False)
    full_name = Column(String(150), nullable=True)
    phone = Column(String(20), nullable=True)
    avatar_url = Column(String(255), nullable=True)
    # Profile link: the company this user works in
    company_id = Column(Integer, ForeignKey("companies.id", ondelete='SET NULL'), nullable=True, index=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<User {self.email}>"


class UserRole(Base):
    __tablename__ = "user_roles"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete='CASCADE'), nullable=False, index=True)
    company_id = Column(Integer, ForeignKey("companies.id", ondelete='CASCADE'), nullable=True, index=True)
    role = Column(String(20), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('user_id', 'role', 'company_id', name='uq_user_role_company'),
    )

    def __repr__(self):
        return f"<UserRole {self.role} User:{self.user_id} Company:{self.company_id}>"


class RolePermission(Base):
    """Per-company override of the default permission matrix"""
    __tablename__ = "role_permissions"

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id", ondelete='CASCADE'), nullable=False, index=True)
    role = Column(String(20), nullable=False)
    module = Column(String(50), nullable=False)
    can_view = Column(Boolean, default=False, nullable=False)
    can_create = Column(Boolean, default=False, nullable=False)
    can_edit = Column(Boolean, default=False, nullable=False)
    can_delete = Column(Boolean, default=False, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('company_id', 'role', 'module', name='uq_role_permission'),
    )

    def __repr__(self):
        return f"<RolePermission {self.role}:{self.module} (Company: {self.company_id})>"


# =============================================================================
# CLIENTS, PETS, CATALOG
# =============================================================================

class Client(Base):
    """Pet owner (tutor)"""
    __tablename__ = "clients"

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id", ondelete='CASCADE'), nullable=False, index=True)
    name = Column(String(150), nullable=False)
    email = Column(String(150), nullable=True)
    phone = Column(String(20), nullable=True)
    address = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index('idx_clients_company_name', 'company_id', 'name'),
    )

    def __repr__(self):
        return f"<Client {self.name} (Company: {self.company_id})>"


class Pet(Base):
    __tablename__ = "pets"

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id", ondelete='CASCADE'), nullable=False, index=True)
    client_id = Column(Integer, ForeignKey("clients.id", ondelete='CASCADE'), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    species = Column(String(50), nullable=False)
    breed = Column(String(100), nullable=True)
    birth_date = Column(Date, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    client = relationship("Client")

    def __repr__(self):
        return f"<Pet {self.name} ({self.species})>"


class Service(Base):
    __tablename__ = "services"

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id", ondelete='CASCADE'), nullable=False, index=True)
    name = Column(String(150), nullable=False)
    category = Column(String(100), nullable=False)
    duration_minutes = Column(Integer, nullable=False, default=30)
    price = Column(Float, nullable=False, default=0.0)
    commission_pct = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<Service {self.name} (Company: {self.company_id})>"


class Product(Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id", ondelete='CASCADE'), nullable=False, index=True)
    name = Column(String(150), nullable=False)
    category = Column(String(100), nullable=False)
    stock = Column(Integer, nullable=False, default=0)
    min_stock = Column(Integer, nullable=False, default=0)
    price = Column(Float, nullable=False, default=0.0)
    unit = Column(String(20), nullable=False, default="un")
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index('idx_products_company_stock', 'company_id', 'stock'),
    )

    def __repr__(self):
        return f"<Product {self.name} (Company: {self.company_id})>"


class StockMovement(Base):
    __tablename__ = "stock_movements"

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id", ondelete='CASCADE'), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete='CASCADE'), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete='SET NULL'), nullable=True)
    movement_type = Column(String(20), nullable=False)
    quantity = Column(Integer, nullable=False)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f"<StockMovement {self.movement_type} {self.quantity} Product:{self.product_id}>"


# =============================================================================
# SCHEDULING AND CLINICAL
# =============================================================================

class Appointment(Base):
    __tablename__ = "appointments"

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id", ondelete='CASCADE'), nullable=False, index=True)
    client_id = Column(Integer, ForeignKey("clients.id", ondelete='CASCADE'), nullable=False, index=True)
    pet_id = Column(Integer, ForeignKey("pets.id", ondelete='CASCADE'), nullable=False, index=True)
    service_id = Column(Integer, ForeignKey("services.id", ondelete='RESTRICT'), nullable=False, index=True)
    scheduled_at = Column(DateTime, nullable=False)  # UTC
    duration_minutes = Column(Integer, nullable=False, default=30)
    status = Column(String(20), nullable=False, default=AppointmentStatus.SCHEDULED.value)
    vet_name = Column(String(150), nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    client = relationship("Client")
    pet = relationship("Pet")
    service = relationship("Service")

    __table_args__ = (
        Index('idx_appointments_company_scheduled', 'company_id', 'scheduled_at'),
        Index('idx_appointments_status', 'status'),
    )

    def __repr__(self):
        return f"<Appointment {self.id} at {self.scheduled_at} ({self.status})>"


class MedicalRecord(Base):
    __tablename__ = "medical_records"

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id", ondelete='CASCADE'), nullable=False, index=True)
    pet_id = Column(Integer, ForeignKey("pets.id", ondelete='CASCADE'), nullable=False, index=True)
    appointment_id = Column(Integer, ForeignKey("appointments.id", ondelete='SET NULL'), nullable=True)
    record_date = Column(Date, nullable=False)
    weight_kg = Column(Float, nullable=True)
    temperature_c = Column(Float, nullable=True)
    diagnosis = Column(Text, nullable=True)
    treatment = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)
    created_by = Column(Integer, ForeignKey("users.id", ondelete='SET NULL'), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index('idx_medical_records_company_date', 'company_id', 'record_date'),
    )

    def __repr__(self):
        return f"<MedicalRecord {self.id} Pet:{self.pet_id}>"


class ReminderJob(Base):
    """A queued reminder: a row with a future scheduled_for, polled when due"""
    __tablename__ = "reminder_jobs"

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id", ondelete='CASCADE'), nullable=False, index=True)
    appointment_id = Column(Integer, ForeignKey("appointments.id", ondelete='SET NULL'), nullable=True)
    reminder_type = Column(String(50), nullable=False)
    channel = Column(String(20), nullable=False, default=ReminderChannel.EMAIL.value)
    status = Column(String(20), nullable=False, default=ReminderStatus.PENDING.value)
    scheduled_for = Column(DateTime, nullable=False)
    sent_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('appointment_id', 'reminder_type', name='uq_reminder_appointment_type'),
        Index('idx_reminder_jobs_due', 'status', 'scheduled_for'),
    )

    def __repr__(self):
        return f"<ReminderJob {self.id} {self.reminder_type} ({self.status}) at {self.scheduled_for}>"


# =============================================================================
# FINANCIAL
# =============================================================================

class Transaction(Base):
    """Ledger row: revenue or expense"""
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id", ondelete='CASCADE'), nullable=False, index=True)
    type = Column(String(20), nullable=False)
    date = Column(Date, nullable=False)
    description = Column(String(255), nullable=False)
    category = Column(String(100), nullable=True)
    value = Column(Float, nullable=False, default=0.0)
    status = Column(String(20), nullable=False, default="paid")
    payment_method = Column(String(20), nullable=True)
    appointment_id = Column(Integer, ForeignKey("appointments.id", ondelete='SET NULL'), nullable=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index('idx_transactions_company_date', 'company_id', 'date'),
        Index('idx_transactions_company_type', 'company_id', 'type'),
    )

    def __repr__(self):
        return f"<Transaction {self.type} {self.value} (Company: {self.company_id})>"


class CashEntry(Base):
    """Cashbook movement, always backed by a ledger transaction"""
    __tablename__ = "cash_entries"

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id", ondelete='CASCADE'), nullable=False, index=True)
    transaction_id = Column(Integer, ForeignKey("transactions.id", ondelete='CASCADE'), nullable=False, index=True)
    entry_type = Column(String(10), nullable=False)
    amount = Column(Float, nullable=False)
    payment_method = Column(String(20), nullable=False, default=PaymentMethod.CASH.value)
    description = Column(String(255), nullable=True)
    occurred_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    reference_type = Column(String(30), nullable=True)  # manual, appointment
    reference_id = Column(Integer, nullable=True)
    created_by = Column(Integer, ForeignKey("users.id", ondelete='SET NULL'), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index('idx_cash_entries_company_occurred', 'company_id', 'occurred_at'),
        Index('idx_cash_entries_reference', 'reference_type', 'reference_id'),
    )

    def __repr__(self):
        return f"<CashEntry {self.entry_type} {self.amount} Txn:{self.transaction_id}>"


# =============================================================================
# SETTINGS
# =============================================================================

class NotificationSettings(Base):
    __tablename__ = "notification_settings"

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id", ondelete='CASCADE'), nullable=False, unique=True)
    reminders = Column(Boolean, default=True, nullable=False)
    low_stock = Column(Boolean, default=True, nullable=False)
    payment_receipt = Column(Boolean, default=True, nullable=False)
    pet_birthday = Column(Boolean, default=False, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class AppearanceSettings(Base):
    __tablename__ = "appearance_settings"

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id", ondelete='CASCADE'), nullable=False, unique=True)
    theme = Column(String(20), default="light", nullable=False)
    primary_color = Column(String(30), default="petpro", nullable=False)
    logo_url = Column(String(255), default="", nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class UserSecuritySettings(Base):
    __tablename__ = "user_security_settings"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete='CASCADE'), nullable=False, unique=True)
    two_factor_enabled = Column(Boolean, default=False, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# =============================================================================
# FILES AND AUDIT
# =============================================================================

class Attachment(Base):
    __tablename__ = "attachments"

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id", ondelete='CASCADE'), nullable=False, index=True)
    entity_type = Column(String(30), nullable=False)
    entity_id = Column(Integer, nullable=False)
    file_name = Column(String(255), nullable=False)
    file_url = Column(String(500), nullable=False)
    mime_type = Column(String(100), nullable=True)
    size_bytes = Column(Integer, nullable=False, default=0)
    uploaded_by = Column(Integer, ForeignKey("users.id", ondelete='SET NULL'), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index('idx_attachments_entity', 'company_id', 'entity_type', 'entity_id'),
    )

    def __repr__(self):
        return f"<Attachment {self.file_name} {self.entity_type}:{self.entity_id}>"


class AuditLog(Base):
    """Audit trail of sensitive tenant and platform actions"""
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    actor_user_id = Column(Integer, ForeignKey("users.id", ondelete='SET NULL'), nullable=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id", ondelete='SET NULL'), nullable=True, index=True)
    action = Column(String(100), nullable=False, index=True)  # company.created, plan.updated, ...
    entity_type = Column(String(50), nullable=True)
    entity_id = Column(Integer, nullable=True)
    details = Column(Text, nullable=True)  # JSON string with additional metadata
    ip_address = Column(String(50), nullable=True)
    user_agent = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    __table_args__ = (
        Index('idx_audit_logs_entity', 'entity_type', 'entity_id'),
    )

    def __repr__(self):
        return f"<AuditLog {self.action} by User:{self.actor_user_id}>"
