"""
Plan limits and module flags.

A company's plan carries optional hard limits (max_users, max_pets) and a
JSON `features` object. Limits fall back to features.users / features.pets;
module flags default to enabled when the key is absent or null.
"""

import json
import logging
import math
from typing import Any, Dict, Optional

from fastapi import Depends
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_company
from database import get_db
from errors import plan_limit
from models import Company, Plan, User, Pet

logger = logging.getLogger(__name__)

TRUTHY_STRINGS = {"true", "1", "yes", "on"}

LIMIT_LABELS = {
    "users": "usuários",
    "pets": "pets",
}


def parse_features(raw: Optional[str]) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning(f"⚠️ Ignoring malformed plan features: {raw!r}")
        return {}
    return value if isinstance(value, dict) else {}


def normalize_limit(value: Any) -> Optional[int]:
    """None means unlimited; negative or non-finite values are unlimited too"""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number) or number < 0:
        return None
    return int(math.floor(number))


def is_module_enabled(features: Dict[str, Any], key: str) -> bool:
    value = features.get(key)
    if value is None:
        return True
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in TRUTHY_STRINGS
    return bool(value)


async def get_plan_context(db: AsyncSession, company: Company) -> Dict[str, Any]:
    plan = await db.get(Plan, company.current_plan_id) if company.current_plan_id else None
    features = parse_features(plan.features) if plan else {}

    # A column that normalizes to unlimited defers to the features object
    max_users = normalize_limit(plan.max_users if plan else None)
    if max_users is None:
        max_users = normalize_limit(features.get("users"))
    max_pets = normalize_limit(plan.max_pets if plan else None)
    if max_pets is None:
        max_pets = normalize_limit(features.get("pets"))

    return {
        "planId": plan.id if plan else None,
        "planName": plan.name if plan else "Sem plano",
        "companyStatus": company.status,
        "maxUsers": max_users,
        "maxPets": max_pets,
        "features": features,
    }


async def count_usage(db: AsyncSession, company_id: int, entity: str) -> int:
    if entity == "users":
        query = select(func.count(User.id)).where(User.company_id == company_id)
    elif entity == "pets":
        query = select(func.count(Pet.id)).where(Pet.company_id == company_id)
    else:
        raise ValueError(f"Unknown plan limit: {entity}")
    return (await db.execute(query)).scalar() or 0


async def assert_plan_limit(db: AsyncSession, company: Company, entity: str):
    """Raise PLAN_LIMIT when creating one more `entity` would exceed the plan"""
    context = await get_plan_context(db, company)
    limit = context["maxUsers"] if entity == "users" else context["maxPets"]
    if limit is None:
        return

    used = await count_usage(db, company.id, entity)
    if used >= limit:
        raise plan_limit(
            f"Limite do plano {context['planName']} atingido: {limit} {LIMIT_LABELS[entity]}. "
            f"Faça upgrade para continuar."
        )


def require_module(key: str, label: str):
    """Dependency factory: 403 PLAN_LIMIT when the plan disables the module"""
    async def checker(
        company: Company = Depends(get_current_company),
        db: AsyncSession = Depends(get_db)
    ) -> Company:
        context = await get_plan_context(db, company)
        if not is_module_enabled(context["features"], key):
            raise plan_limit(
                f"{label} não está disponível no plano {context['planName']}. "
                f"Faça upgrade para liberar esse recurso."
            )
        return company
    return checker
