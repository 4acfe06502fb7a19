"""
Platform Super Admin API Router

This module provides platform-wide administrative endpoints for managing
plans and companies and for monitoring subscription metrics.

Access is restricted to superadmin users only.
"""

import json
import logging
from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from audit import write_audit_log
from auth import require_super_admin
from config import settings
from database import get_db
from errors import bad_request, conflict, not_found
from models import Company, CompanyStatus, Plan, Transaction, TransactionType, User
from plan_access import parse_features
from reports import csv_response, to_csv
from schemas import AdminCompanyCreate, AdminCompanyUpdate, PlanUpdate
from timezone_utils import last_n_month_starts, month_start, previous_month_start

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["Platform Admin"])


# =============================================================================
# PLANS
# =============================================================================

def _plan_row(plan: Plan) -> dict:
    return {
        "id": plan.id,
        "name": plan.name,
        "description": plan.description or "",
        "price": plan.price,
        "trial_days": plan.trial_days,
        "max_users": plan.max_users,
        "max_pets": plan.max_pets,
        "features": parse_features(plan.features),
        "is_active": plan.is_active,
    }


@router.get("/plans")
async def list_plans(
    db: AsyncSession = Depends(get_db),
    _: User = Depends(require_super_admin)
):
    result = await db.execute(select(Plan).order_by(Plan.price.asc(), Plan.id.asc()))
    return [_plan_row(plan) for plan in result.scalars().all()]


@router.put("/plans/{plan_id}")
async def update_plan(
    plan_id: int,
    data: PlanUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_super_admin)
):
    """
    Update plan pricing, limits and feature flags.
    """
    plan = await db.get(Plan, plan_id)
    if not plan:
        raise not_found("Plano não encontrado.")

    updates = data.model_dump(exclude_unset=True)
    if updates.get("name") and updates["name"] != plan.name:
        result = await db.execute(select(Plan.id).where(Plan.name == updates["name"], Plan.id != plan.id))
        if result.scalar_one_or_none():
            raise conflict("Já existe um plano com este nome.", field="name")

    for field, value in updates.items():
        if field == "features":
            plan.features = json.dumps(value) if value is not None else None
        elif field in ("name", "price", "trial_days", "is_active") and value is None:
            continue
        else:
            setattr(plan, field, value)

    plan.updated_at = datetime.utcnow()
    await db.commit()
    await db.refresh(plan)

    await write_audit_log(
        db, "plan.updated",
        actor_user_id=current_user.id,
        entity_type="plan", entity_id=plan.id,
        metadata={"fields": sorted(updates.keys())},
        request=request,
    )
    logger.info(f"📝 Plan '{plan.name}' updated by {current_user.email}")
    return _plan_row(plan)


# =============================================================================
# COMPANY MANAGEMENT
# =============================================================================

def _company_row(company: Company, plan: Optional[Plan]) -> dict:
    return {
        "id": company.id,
        "name": company.name,
        "cnpj": company.cnpj,
        "phone": company.phone,
        "address": company.address,
        "status": company.status,
        "plan_id": company.current_plan_id,
        "plan": plan.name if plan else None,
        "trial_ends_at": company.trial_ends_at,
        "created_at": company.created_at,
    }


async def _get_plan_or_400(db: AsyncSession, plan_id: int) -> Plan:
    plan = await db.get(Plan, plan_id)
    if not plan:
        raise bad_request("Plano inválido.", field="plan_id")
    return plan


@router.post("/companies", status_code=status.HTTP_201_CREATED)
async def create_company(
    data: AdminCompanyCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_super_admin)
):
    """
    Create a company from the console (no users are created).
    """
    plan = await _get_plan_or_400(db, data.plan_id) if data.plan_id is not None else None

    if data.cnpj:
        result = await db.execute(select(Company.id).where(Company.cnpj == data.cnpj))
        if result.scalar_one_or_none():
            raise conflict("Este CNPJ já está em uso.", field="cnpj")

    trial_ends_at = data.trial_ends_at
    if data.status == CompanyStatus.TRIAL and trial_ends_at is None:
        trial_days = plan.trial_days if plan and plan.trial_days else settings.TRIAL_PERIOD_DAYS
        trial_ends_at = datetime.utcnow() + timedelta(days=trial_days)

    company = Company(
        name=data.name.strip(),
        cnpj=data.cnpj,
        phone=data.phone,
        address=data.address,
        status=data.status.value,
        current_plan_id=plan.id if plan else None,
        trial_ends_at=trial_ends_at,
        timezone=settings.DEFAULT_TIMEZONE,
    )
    db.add(company)
    await db.commit()
    await db.refresh(company)

    await write_audit_log(
        db, "company.created",
        actor_user_id=current_user.id, company_id=company.id,
        entity_type="company", entity_id=company.id,
        metadata={"created_by": "superadmin", "status": company.status},
        request=request,
    )
    logger.info(f"🏢 Company #{company.id} ({company.name}) created by {current_user.email}")
    return _company_row(company, plan)


@router.put("/companies/{company_id}")
async def update_company(
    company_id: int,
    data: AdminCompanyUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_super_admin)
):
    """
    Update company status, plan and trial end.
    """
    company = await db.get(Company, company_id)
    if not company:
        raise not_found("Empresa não encontrada.")

    updates = data.model_dump(exclude_unset=True)
    if updates.get("plan_id") is not None:
        await _get_plan_or_400(db, updates["plan_id"])

    for field, value in updates.items():
        if field == "plan_id":
            company.current_plan_id = value
        elif field == "status":
            if value is not None:
                company.status = value.value
        elif field == "name":
            if value is not None:
                company.name = value.strip()
        else:
            setattr(company, field, value)

    company.updated_at = datetime.utcnow()
    await db.commit()
    await db.refresh(company)

    await write_audit_log(
        db, "company.updated",
        actor_user_id=current_user.id, company_id=company.id,
        entity_type="company", entity_id=company.id,
        metadata={"fields": sorted(updates.keys()), "status": company.status},
        request=request,
    )
    plan = await db.get(Plan, company.current_plan_id) if company.current_plan_id else None
    return _company_row(company, plan)


@router.get("/export/companies")
async def export_companies(
    db: AsyncSession = Depends(get_db),
    _: User = Depends(require_super_admin)
):
    result = await db.execute(select(Company).order_by(Company.created_at.desc()))
    rows = [
        [c.name, c.status, c.created_at.strftime("%Y-%m-%d") if c.created_at else ""]
        for c in result.scalars().all()
    ]
    return csv_response(to_csv(["Empresa", "Status", "Criada em"], rows), "empresas.csv")


# =============================================================================
# PLATFORM METRICS
# =============================================================================

def _month_key(value) -> str:
    return value.strftime("%Y-%m")


@router.get("/metrics")
async def get_platform_metrics(
    db: AsyncSession = Depends(get_db),
    _: User = Depends(require_super_admin)
):
    """
    Get platform-wide key performance indicators and chart series.
    """
    now = datetime.utcnow()

    # Companies by status
    result = await db.execute(select(Company.status, func.count(Company.id)).group_by(Company.status))
    by_status = {row[0]: row[1] for row in result.all()}
    total_companies = sum(by_status.values())
    active_companies = by_status.get(CompanyStatus.ACTIVE.value, 0)

    new_companies = (await db.execute(
        select(func.count(Company.id)).where(Company.created_at >= now - timedelta(days=30))
    )).scalar() or 0

    total_users = (await db.execute(select(func.count(User.id)))).scalar() or 0

    # MRR: plan price of every active company
    mrr = float((await db.execute(
        select(func.coalesce(func.sum(Plan.price), 0))
        .select_from(Company)
        .join(Plan, Plan.id == Company.current_plan_id)
        .where(Company.status == CompanyStatus.ACTIVE.value)
    )).scalar() or 0)
    arpu = round(mrr / active_companies, 2) if active_companies else 0

    # Monthly series (last 6 months, oldest first)
    months = last_n_month_starts(now.date(), 6)
    first_month = months[0]
    prev_month = previous_month_start(now.date())

    created = await db.execute(
        select(Company.created_at).where(Company.created_at >= datetime.combine(first_month, datetime.min.time()))
    )
    companies_by_month = {_month_key(m): 0 for m in months}
    for (created_at,) in created.all():
        key = _month_key(created_at)
        if key in companies_by_month:
            companies_by_month[key] += 1

    revenue = await db.execute(
        select(Transaction.date, Transaction.value).where(
            Transaction.type == TransactionType.REVENUE.value,
            Transaction.date >= min(first_month, prev_month)
        )
    )
    revenue_by_month = {_month_key(m): 0.0 for m in months}
    revenue_by_month.setdefault(_month_key(prev_month), 0.0)
    for txn_date, value in revenue.all():
        key = _month_key(txn_date)
        if key in revenue_by_month:
            revenue_by_month[key] += float(value or 0)

    revenue_month = round(revenue_by_month[_month_key(month_start(now.date()))], 2)
    revenue_previous = round(revenue_by_month[_month_key(prev_month)], 2)
    revenue_change_pct = (
        round((revenue_month - revenue_previous) / revenue_previous * 100, 1) if revenue_previous else 0
    )

    return {
        "stats": {
            "total_companies": total_companies,
            "active_companies": active_companies,
            "trial_companies": by_status.get(CompanyStatus.TRIAL.value, 0),
            "past_due_companies": by_status.get(CompanyStatus.PAST_DUE.value, 0),
            "cancelled_companies": by_status.get(CompanyStatus.CANCELLED.value, 0),
            "new_companies_30d": new_companies,
            "total_users": total_users,
            "mrr": round(mrr, 2),
            "arpu": arpu,
            "revenue_month": revenue_month,
            "revenue_change_pct": revenue_change_pct,
        },
        "charts": {
            "companies_by_status": [
                {"status": s.value, "count": by_status.get(s.value, 0)} for s in CompanyStatus
            ],
            "companies_by_month": [
                {"month": _month_key(m), "count": companies_by_month[_month_key(m)]} for m in months
            ],
            "revenue_by_month": [
                {"month": _month_key(m), "revenue": round(revenue_by_month[_month_key(m)], 2)} for m in months
            ],
        },
    }
