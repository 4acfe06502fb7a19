from datetime import datetime, timedelta
from typing import Optional, List, Dict
from jose import JWTError, jwt
from passlib.context import CryptContext
from fastapi import Depends, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, or_

from config import settings
from database import get_db
from errors import ApiError
from models import User, Company, UserRole, RolePermission, RoleName

SECRET_KEY = settings.SECRET_KEY
ALGORITHM = settings.ALGORITHM
ACCESS_TOKEN_EXPIRE_MINUTES = settings.ACCESS_TOKEN_EXPIRE_MINUTES

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
# auto_error=False so a missing token gets our own 401 message
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/login", auto_error=False)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against a hash"""
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    """Hash a password"""
    return pwd_context.hash(password)


def create_access_token(user: User, expires_delta: Optional[timedelta] = None) -> str:
    """Create a signed JWT carrying the user id and its company"""
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode = {
        "sub": str(user.id),
        "email": user.email,
        "company_id": user.company_id,
        "exp": expire,
    }
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_access_token(token: str) -> dict:
    return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])


async def get_current_user(
    token: Optional[str] = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db)
) -> User:
    """Get the current authenticated user"""
    if not token:
        raise ApiError(status.HTTP_401_UNAUTHORIZED, "Token ausente.", headers={"WWW-Authenticate": "Bearer"})

    credentials_exception = ApiError(
        status.HTTP_401_UNAUTHORIZED,
        "Token inválido ou expirado.",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = decode_access_token(token)
        user_id = int(payload.get("sub"))
    except (JWTError, TypeError, ValueError):
        raise credentials_exception

    user = await db.get(User, user_id)
    if user is None or not user.is_active:
        raise credentials_exception
    return user


# =============================================================================
# ROLES
# =============================================================================

async def get_user_roles(db: AsyncSession, user: User) -> List[UserRole]:
    """Role rows relevant to the user: its company roles plus platform roles"""
    result = await db.execute(
        select(UserRole).where(
            UserRole.user_id == user.id,
            or_(UserRole.company_id == user.company_id, UserRole.role == RoleName.SUPERADMIN.value)
        )
    )
    return list(result.scalars().all())


async def get_role_flags(db: AsyncSession, user: User) -> Dict:
    """
    Resolve the user's effective role.

    - is_superadmin: superadmin role in any company (or platform-wide)
    - is_admin: superadmin, or admin in the user's company
    - role: the company role used for permission lookups ('usuario' if none)
    """
    roles = await get_user_roles(db, user)
    names = {r.role for r in roles}
    company_roles = [r.role for r in roles if r.company_id == user.company_id and r.company_id is not None]

    is_superadmin = RoleName.SUPERADMIN.value in names
    is_admin = is_superadmin or RoleName.ADMIN.value in company_roles

    role = RoleName.USUARIO.value
    for candidate in (RoleName.ADMIN, RoleName.SUPERVISOR, RoleName.ATENDENTE, RoleName.USUARIO):
        if candidate.value in company_roles:
            role = candidate.value
            break

    return {"is_superadmin": is_superadmin, "is_admin": is_admin, "role": role}


async def get_current_company(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
) -> Company:
    """Company of the current user; every tenant-scoped endpoint depends on this"""
    company = await db.get(Company, current_user.company_id) if current_user.company_id else None
    if company is None:
        raise ApiError(
            status.HTTP_403_FORBIDDEN,
            "Usuário não está vinculado a nenhuma empresa. Entre em contato com o suporte."
        )
    return company


async def require_admin(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
) -> User:
    """Dependency to require company admin (or superadmin)"""
    flags = await get_role_flags(db, current_user)
    if not flags["is_admin"]:
        raise ApiError(status.HTTP_403_FORBIDDEN, "Acesso restrito a administradores.")
    return current_user


async def require_super_admin(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
) -> User:
    """Dependency to require platform superadmin"""
    flags = await get_role_flags(db, current_user)
    if not flags["is_superadmin"]:
        raise ApiError(status.HTTP_403_FORBIDDEN, "Acesso restrito a superadmin.")
    return current_user


# =============================================================================
# ROLE-BASED ACCESS CONTROL (RBAC) SYSTEM
# =============================================================================

MODULES = [
    "dashboard", "clients", "pets", "services", "inventory", "appointments",
    "medical_records", "reminders", "financial", "cashbook", "reports", "settings",
]
ACTIONS = ("view", "create", "edit", "delete")

_ALL = set(ACTIONS)
_WORK = {"view", "create", "edit"}
_VIEW = {"view"}

# Default matrix used when a company has not customised a role/module
ROLE_PERMISSIONS = {
    RoleName.SUPERVISOR.value: {
        **{module: _ALL for module in MODULES},
        "settings": _VIEW,
    },
    RoleName.ATENDENTE.value: {
        "dashboard": _VIEW,
        "clients": _WORK,
        "pets": _WORK,
        "services": _VIEW,
        "inventory": _VIEW,
        "appointments": _ALL,
        "medical_records": _VIEW,
        "reminders": {"view", "create"},
        "cashbook": {"view", "create"},
    },
    RoleName.USUARIO.value: {
        "dashboard": _VIEW,
        "clients": _WORK,
        "pets": _WORK,
        "services": _VIEW,
        "inventory": _VIEW,
        "appointments": _WORK,
        "medical_records": _WORK,
        "reminders": _VIEW,
    },
}


def default_permissions(role: str) -> Dict[str, Dict[str, bool]]:
    matrix = ROLE_PERMISSIONS.get(role, {})
    return {
        module: {f"can_{action}": action in matrix.get(module, set()) for action in ACTIONS}
        for module in MODULES
    }


async def get_effective_permissions(db: AsyncSession, company_id: int, role: str) -> Dict[str, Dict[str, bool]]:
    """Default matrix for the role, overridden per module by the company's rows"""
    if role in (RoleName.ADMIN.value, RoleName.SUPERADMIN.value):
        return {module: {f"can_{action}": True for action in ACTIONS} for module in MODULES}

    permissions = default_permissions(role)
    result = await db.execute(
        select(RolePermission).where(
            RolePermission.company_id == company_id,
            RolePermission.role == role
        )
    )
    for row in result.scalars().all():
        permissions[row.module] = {
            "can_view": row.can_view,
            "can_create": row.can_create,
            "can_edit": row.can_edit,
            "can_delete": row.can_delete,
        }
    return permissions


def require_permission(module: str, action: str = "view"):
    """
    Dependency factory for permission checks. Resolves to the current company.

    Write actions also require an active subscription.

    Usage:
        @router.get("/clients")
        async def list_clients(company: Company = Depends(require_permission("clients", "view"))):
            ...
    """
    async def checker(
        current_user: User = Depends(get_current_user),
        company: Company = Depends(get_current_company),
        db: AsyncSession = Depends(get_db)
    ) -> Company:
        flags = await get_role_flags(db, current_user)
        if not flags["is_admin"]:
            permissions = await get_effective_permissions(db, company.id, flags["role"])
            if not permissions.get(module, {}).get(f"can_{action}", False):
                raise ApiError(status.HTTP_403_FORBIDDEN, "Você não tem permissão para esta ação.")

        if action != "view":
            from subscription_middleware import ensure_subscription_active
            ensure_subscription_active(company)
        return company
    return checker
