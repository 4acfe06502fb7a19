"""
Company (tenant) management API endpoints.
Handles self-service registration, invitations, company settings,
user roles, permission overrides and the user's own profile.
"""
import logging
import re
from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request, status
from sqlalchemy import select, delete, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from audit import write_audit_log
from auth import (
    MODULES, create_access_token, get_current_company, get_current_user,
    get_effective_permissions, get_password_hash, get_role_flags, require_admin
)
from config import settings
from database import get_db
from email_service import email_service
from errors import bad_request, conflict, not_found, ApiError
from file_utils import decode_data_url, delete_upload, save_upload
from image_utils import process_avatar
from models import (
    AppearanceSettings, Company, CompanyStatus, NotificationSettings, Plan,
    RoleName, RolePermission, User, UserRole, UserSecuritySettings
)
from pagination import ListParams
from plan_access import assert_plan_limit
from reminders import cancel_company_reminders, resync_company_reminders
from schemas import (
    AppearanceSettingsUpdate, CompanySettingsUpdate, FileUpload, InviteRequest,
    NotificationSettingsUpdate, PermissionsUpdate, ProfileUpdate, RegisterRequest,
    SecuritySettingsUpdate, UserRoleUpdate
)
from subscription_middleware import check_company_subscription_active

logger = logging.getLogger(__name__)

router = APIRouter(tags=["tenants"])

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

ROLE_PRIORITY = [RoleName.ADMIN.value, RoleName.SUPERVISOR.value, RoleName.ATENDENTE.value, RoleName.USUARIO.value]

NOTIFICATION_DEFAULTS = {"reminders": True, "low_stock": True, "payment_receipt": True, "pet_birthday": False}
APPEARANCE_DEFAULTS = {"theme": "light", "primary_color": "petpro", "logo_url": ""}


def build_auth_user(user: User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "full_name": user.full_name,
        "phone": user.phone,
        "avatar_url": user.avatar_url,
    }


def build_auth_company(company: Optional[Company]) -> Optional[dict]:
    if company is None:
        return None
    return {"id": company.id, "name": company.name}


async def get_trial_plan(db: AsyncSession) -> Optional[Plan]:
    """The active 'trial' plan, else the active plan with the longest trial"""
    result = await db.execute(select(Plan).where(Plan.name == "trial", Plan.is_active == True))
    plan = result.scalar_one_or_none()
    if plan:
        return plan
    result = await db.execute(
        select(Plan)
        .where(Plan.is_active == True, Plan.trial_days > 0)
        .order_by(Plan.trial_days.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


def pick_role(roles) -> str:
    for candidate in ROLE_PRIORITY:
        if candidate in roles:
            return candidate
    return RoleName.USUARIO.value


# ==================== REGISTRATION ====================

@router.post("/auth/register", status_code=status.HTTP_201_CREATED)
async def register_company(
    payload: RegisterRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db)
):
    """
    PUBLIC ENDPOINT: Register a new company.
    Creates the company on a trial, its admin user and returns a session token.
    """
    result = await db.execute(select(User.id).where(User.email == payload.email))
    if result.scalar_one_or_none():
        raise conflict("Este e-mail já está em uso.", field="email")

    if payload.company_cnpj:
        result = await db.execute(select(Company.id).where(Company.cnpj == payload.company_cnpj))
        if result.scalar_one_or_none():
            raise conflict("Este CNPJ já está em uso.", field="company_cnpj")

    plan = await get_trial_plan(db)
    trial_days = plan.trial_days if plan and plan.trial_days else settings.TRIAL_PERIOD_DAYS

    company = Company(
        name=payload.company_name.strip(),
        cnpj=payload.company_cnpj,
        phone=payload.company_phone,
        address=payload.company_address,
        status=CompanyStatus.TRIAL.value,
        current_plan_id=plan.id if plan else None,
        trial_ends_at=datetime.utcnow() + timedelta(days=trial_days),
        timezone=settings.DEFAULT_TIMEZONE,
    )
    db.add(company)
    await db.flush()  # Get company ID

    user = User(
        email=payload.email,
        hashed_password=get_password_hash(payload.password),
        full_name=payload.full_name.strip(),
        phone=payload.user_phone,
        company_id=company.id,
        is_active=True,
    )
    db.add(user)
    await db.flush()  # Get user ID

    db.add(UserRole(user_id=user.id, company_id=company.id, role=RoleName.ADMIN.value))

    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise conflict("Este e-mail já está em uso.", field="email")

    logger.info(f"🏢 Company #{company.id} registered by {user.email} (trial {trial_days} days)")
    await write_audit_log(
        db, "company.created",
        actor_user_id=user.id, company_id=company.id,
        entity_type="company", entity_id=company.id,
        metadata={"created_by": "self_register", "email": user.email},
        request=request,
    )

    background_tasks.add_task(
        email_service.send_welcome_email,
        user_email=user.email,
        user_full_name=user.full_name,
        company_name=company.name,
        trial_days=trial_days,
    )

    return {
        "token": create_access_token(user),
        "user": build_auth_user(user),
        "company": build_auth_company(company),
    }


@router.get("/auth/check-email")
async def check_email(
    email: str = Query(""),
    db: AsyncSession = Depends(get_db)
):
    """PUBLIC ENDPOINT: Is this e-mail free for registration?"""
    email = email.strip().lower()
    if not EMAIL_RE.match(email):
        raise bad_request("E-mail inválido.", field="email")
    result = await db.execute(select(User.id).where(User.email == email))
    return {"available": result.scalar_one_or_none() is None}


@router.post("/api/invite", status_code=status.HTTP_201_CREATED)
async def invite_user(
    payload: InviteRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    company: Company = Depends(check_company_subscription_active),
    db: AsyncSession = Depends(get_db)
):
    """Add a user to the admin's company with the default 'usuario' role"""
    await assert_plan_limit(db, company, "users")

    result = await db.execute(select(User.id).where(User.email == payload.email))
    if result.scalar_one_or_none():
        raise conflict("Este e-mail já está em uso.", field="email")

    user = User(
        email=payload.email,
        hashed_password=get_password_hash(payload.password),
        full_name=(payload.full_name or "").strip() or None,
        phone=payload.phone,
        company_id=company.id,
        is_active=True,
    )
    db.add(user)
    await db.flush()
    db.add(UserRole(user_id=user.id, company_id=company.id, role=RoleName.USUARIO.value))
    await db.commit()

    await write_audit_log(
        db, "user.invited",
        actor_user_id=current_user.id, company_id=company.id,
        entity_type="user", entity_id=user.id,
        metadata={"email": user.email, "role": RoleName.USUARIO.value},
        request=request,
    )
    return {"user": build_auth_user(user)}


# ==================== COMPANY SETTINGS ====================

def _company_settings_response(company: Company) -> dict:
    return {
        "name": company.name,
        "cnpj": company.cnpj or "",
        "phone": company.phone or "",
        "address": company.address or "",
        "contact_email": company.contact_email or "",
        "website": company.website or "",
        "hours": company.hours or "",
    }


@router.get("/api/settings/company")
async def get_company_settings(company: Company = Depends(get_current_company)):
    return _company_settings_response(company)


@router.put("/api/settings/company")
async def update_company_settings(
    updates: CompanySettingsUpdate,
    request: Request,
    current_user: User = Depends(require_admin),
    company: Company = Depends(get_current_company),
    db: AsyncSession = Depends(get_db)
):
    """Update company settings (admin only)"""
    data = updates.model_dump(exclude_unset=True)

    if data.get("cnpj") and data["cnpj"] != company.cnpj:
        result = await db.execute(
            select(Company.id).where(Company.cnpj == data["cnpj"], Company.id != company.id)
        )
        if result.scalar_one_or_none():
            raise conflict("Este CNPJ já está em uso.", field="cnpj")

    for key, value in data.items():
        if key == "name" and value is None:
            continue
        setattr(company, key, value)

    company.updated_at = datetime.utcnow()
    await db.commit()

    await write_audit_log(
        db, "company.updated",
        actor_user_id=current_user.id, company_id=company.id,
        entity_type="company", entity_id=company.id,
        metadata={"fields": sorted(data.keys())},
        request=request,
    )
    return {"ok": True}


async def _get_notification_row(db: AsyncSession, company_id: int) -> Optional[NotificationSettings]:
    result = await db.execute(select(NotificationSettings).where(NotificationSettings.company_id == company_id))
    return result.scalar_one_or_none()


@router.get("/api/settings/notifications")
async def get_notification_settings(
    company: Company = Depends(get_current_company),
    db: AsyncSession = Depends(get_db)
):
    row = await _get_notification_row(db, company.id)
    if row is None:
        return dict(NOTIFICATION_DEFAULTS)
    return {key: getattr(row, key) for key in NOTIFICATION_DEFAULTS}


@router.put("/api/settings/notifications")
async def update_notification_settings(
    updates: NotificationSettingsUpdate,
    current_user: User = Depends(require_admin),
    company: Company = Depends(get_current_company),
    db: AsyncSession = Depends(get_db)
):
    """
    Update notification toggles (admin only).
    Turning reminders off cancels pending reminder jobs; turning them back on
    re-schedules upcoming appointments.
    """
    row = await _get_notification_row(db, company.id)
    if row is None:
        row = NotificationSettings(company_id=company.id, **NOTIFICATION_DEFAULTS)
        db.add(row)

    previous_reminders = row.reminders
    for key, value in updates.model_dump(exclude_unset=True).items():
        if value is not None:
            setattr(row, key, value)
    await db.flush()

    if previous_reminders and not row.reminders:
        cancelled = await cancel_company_reminders(db, company.id)
        logger.info(f"🔕 Reminders disabled for company #{company.id}: {cancelled} job(s) cancelled")
    elif not previous_reminders and row.reminders:
        synced = await resync_company_reminders(db, company.id)
        logger.info(f"🔔 Reminders enabled for company #{company.id}: {synced} appointment(s) synced")

    await db.commit()
    return {key: getattr(row, key) for key in NOTIFICATION_DEFAULTS}


@router.get("/api/settings/appearance")
async def get_appearance_settings(
    company: Company = Depends(get_current_company),
    db: AsyncSession = Depends(get_db)
):
    result = await db.execute(select(AppearanceSettings).where(AppearanceSettings.company_id == company.id))
    row = result.scalar_one_or_none()
    if row is None:
        return dict(APPEARANCE_DEFAULTS)
    return {key: getattr(row, key) for key in APPEARANCE_DEFAULTS}


@router.put("/api/settings/appearance")
async def update_appearance_settings(
    updates: AppearanceSettingsUpdate,
    current_user: User = Depends(require_admin),
    company: Company = Depends(get_current_company),
    db: AsyncSession = Depends(get_db)
):
    result = await db.execute(select(AppearanceSettings).where(AppearanceSettings.company_id == company.id))
    row = result.scalar_one_or_none()
    if row is None:
        row = AppearanceSettings(company_id=company.id, **APPEARANCE_DEFAULTS)
        db.add(row)

    for key, value in updates.model_dump(exclude_unset=True).items():
        if value is not None:
            setattr(row, key, value)

    await db.commit()
    return {key: getattr(row, key) for key in APPEARANCE_DEFAULTS}


@router.get("/api/settings/security")
async def get_security_settings(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    result = await db.execute(select(UserSecuritySettings).where(UserSecuritySettings.user_id == current_user.id))
    row = result.scalar_one_or_none()
    return {"two_factor_enabled": bool(row and row.two_factor_enabled)}


@router.put("/api/settings/security")
async def update_security_settings(
    updates: SecuritySettingsUpdate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    result = await db.execute(select(UserSecuritySettings).where(UserSecuritySettings.user_id == current_user.id))
    row = result.scalar_one_or_none()
    if row is None:
        row = UserSecuritySettings(user_id=current_user.id)
        db.add(row)
    row.two_factor_enabled = updates.two_factor_enabled
    await db.commit()
    return {"two_factor_enabled": row.two_factor_enabled}


# ==================== USERS & ROLES ====================

async def company_roles(db: AsyncSession, company_id: int) -> dict:
    """user_id -> set of role names within the company"""
    result = await db.execute(
        select(UserRole.user_id, UserRole.role).where(UserRole.company_id == company_id)
    )
    roles = {}
    for user_id, role in result.all():
        roles.setdefault(user_id, set()).add(role)
    return roles


def _user_row(user: User, roles: dict) -> dict:
    return {
        "id": user.id,
        "name": user.full_name or "",
        "email": user.email,
        "role": pick_role(roles.get(user.id, set())),
    }


@router.get("/api/settings/users")
async def list_company_users(
    company: Company = Depends(get_current_company),
    db: AsyncSession = Depends(get_db)
):
    result = await db.execute(
        select(User).where(User.company_id == company.id).order_by(User.full_name.asc(), User.id.asc())
    )
    roles = await company_roles(db, company.id)
    return [_user_row(user, roles) for user in result.scalars().all()]


async def _get_company_user(db: AsyncSession, company_id: int, user_id: int) -> User:
    result = await db.execute(select(User).where(User.id == user_id, User.company_id == company_id))
    user = result.scalar_one_or_none()
    if not user:
        raise not_found("Usuário não encontrado.")
    return user


@router.get("/api/settings/users/{user_id}")
async def get_company_user(
    user_id: int,
    company: Company = Depends(get_current_company),
    db: AsyncSession = Depends(get_db)
):
    user = await _get_company_user(db, company.id, user_id)
    return _user_row(user, await company_roles(db, company.id))


@router.put("/api/settings/users/{user_id}")
async def update_user_role(
    user_id: int,
    payload: UserRoleUpdate,
    request: Request,
    current_user: User = Depends(require_admin),
    company: Company = Depends(get_current_company),
    db: AsyncSession = Depends(get_db)
):
    """Replace a user's company role (admin only)"""
    user = await _get_company_user(db, company.id, user_id)
    new_role = payload.role.value

    if user.id == current_user.id and new_role != RoleName.ADMIN.value:
        raise bad_request("Você não pode remover o próprio acesso de administrador.", field="role")

    await db.execute(
        delete(UserRole).where(UserRole.user_id == user.id, UserRole.company_id == company.id)
    )
    db.add(UserRole(user_id=user.id, company_id=company.id, role=new_role))
    await db.commit()

    await write_audit_log(
        db, "user.role.updated",
        actor_user_id=current_user.id, company_id=company.id,
        entity_type="user", entity_id=user.id,
        metadata={"role": new_role},
        request=request,
    )
    return _user_row(user, {user.id: {new_role}})


# ==================== PERMISSIONS ====================

def _permission_list(matrix: dict) -> list:
    return [{"module": module, **matrix[module]} for module in MODULES]


@router.get("/api/settings/permissions")
async def get_role_permissions(
    role: RoleName = Query(RoleName.USUARIO),
    company: Company = Depends(get_current_company),
    db: AsyncSession = Depends(get_db)
):
    """Effective permission matrix of a role in this company"""
    matrix = await get_effective_permissions(db, company.id, role.value)
    return {"role": role.value, "permissions": _permission_list(matrix)}


@router.put("/api/settings/permissions/{role}")
async def update_role_permissions(
    role: RoleName,
    payload: PermissionsUpdate,
    request: Request,
    current_user: User = Depends(require_admin),
    company: Company = Depends(get_current_company),
    db: AsyncSession = Depends(get_db)
):
    """Replace the company's permission rows for one role (admin only)"""
    if role in (RoleName.ADMIN, RoleName.SUPERADMIN):
        raise bad_request("Permissões de administradores não podem ser alteradas.", field="role")

    for entry in payload.permissions:
        if entry.module not in MODULES:
            raise bad_request(f"Módulo inválido: {entry.module}.", field="permissions")

    await db.execute(
        delete(RolePermission).where(RolePermission.company_id == company.id, RolePermission.role == role.value)
    )
    for entry in payload.permissions:
        db.add(RolePermission(company_id=company.id, role=role.value, **entry.model_dump()))
    await db.commit()

    await write_audit_log(
        db, "permissions.updated",
        actor_user_id=current_user.id, company_id=company.id,
        entity_type="role", metadata={"role": role.value, "modules": len(payload.permissions)},
        request=request,
    )
    matrix = await get_effective_permissions(db, company.id, role.value)
    return {"role": role.value, "permissions": _permission_list(matrix)}


# ==================== COMPANIES ====================

@router.get("/api/companies")
async def list_companies(
    params: ListParams = Depends(),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Superadmin sees every company; other users see their own"""
    flags = await get_role_flags(db, current_user)

    user_counts = (
        select(User.company_id, func.count(User.id).label("users"))
        .group_by(User.company_id)
        .subquery()
    )
    query = (
        select(Company, Plan, func.coalesce(user_counts.c.users, 0))
        .outerjoin(Plan, Plan.id == Company.current_plan_id)
        .outerjoin(user_counts, user_counts.c.company_id == Company.id)
    )
    if not flags["is_superadmin"]:
        if not current_user.company_id:
            raise ApiError(
                status.HTTP_403_FORBIDDEN,
                "Usuário não está vinculado a nenhuma empresa. Entre em contato com o suporte."
            )
        query = query.where(Company.id == current_user.company_id)
    elif params.pattern:
        query = query.where(or_(Company.name.ilike(params.pattern), Company.cnpj.ilike(params.pattern)))

    result = await db.execute(
        query.order_by(params.sort(Company.created_at)).offset(params.offset).limit(params.limit)
    )
    return [
        {
            "id": company.id,
            "name": company.name,
            "plan": plan.name if plan else "–",
            "plan_id": company.current_plan_id,
            "users": users,
            "status": company.status,
            "mrr": plan.price if plan and company.status == CompanyStatus.ACTIVE.value else 0,
            "created": company.created_at,
        }
        for company, plan, users in result.all()
    ]


# ==================== PROFILE ====================

@router.put("/api/profile")
async def update_profile(
    updates: ProfileUpdate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    data = updates.model_dump(exclude_unset=True)
    email = data.get("email")
    if email:
        email = email.strip().lower()
        if email != current_user.email:
            result = await db.execute(select(User.id).where(User.email == email, User.id != current_user.id))
            if result.scalar_one_or_none():
                raise conflict("Este e-mail já está em uso.", field="email")
            current_user.email = email
    if "full_name" in data:
        current_user.full_name = (data["full_name"] or "").strip() or None

    await db.commit()
    return build_auth_user(current_user)


@router.post("/api/profile/avatar")
async def upload_avatar(
    payload: FileUpload,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Upload a new avatar (resized to at most 1024px, stored as JPEG)"""
    mime_type, content = decode_data_url(payload.data_url, settings.AVATAR_MAX_BYTES)
    optimized = process_avatar(content, mime_type)

    old_url = current_user.avatar_url
    current_user.avatar_url = save_upload(optimized, f"avatars/{current_user.id}", "avatar.jpg")
    await db.commit()
    delete_upload(old_url)

    return {"avatar_url": current_user.avatar_url}


@router.delete("/api/profile/avatar")
async def delete_avatar(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    old_url = current_user.avatar_url
    current_user.avatar_url = None
    await db.commit()
    delete_upload(old_url)
    return {"ok": True}
