"""
Safe auto-seeding on startup.

This module provides idempotent seeding that:
- Creates the default plans (trial, basic, pro) when no plan exists
- Bootstraps the platform superadmin from SEED_SUPERADMIN_* settings
- Optionally seeds a demo clinic when SEED_DEMO_DATA is set and no company exists

Usage (manual):
    python seed_data.py
"""
import asyncio
import json
import logging
from datetime import date, datetime, timedelta

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_password_hash
from config import settings
from models import (
    Client, Company, CompanyStatus, Pet, Plan, Product, RoleName, Service, User, UserRole
)

logger = logging.getLogger(__name__)

DEFAULT_PLANS = [
    {
        "name": "trial",
        "description": "Período de teste gratuito",
        "price": 0.0,
        "trial_days": 14,
        "max_users": 2,
        "max_pets": 50,
        "features": {"medical_records": True, "reminders": True, "cashbook": True, "reports": False},
    },
    {
        "name": "basic",
        "description": "Para clínicas e petshops pequenos",
        "price": 99.9,
        "trial_days": 0,
        "max_users": 3,
        "max_pets": 300,
        "features": {"medical_records": True, "reminders": True, "cashbook": True, "reports": False},
    },
    {
        "name": "pro",
        "description": "Recursos completos e usuários ilimitados",
        "price": 199.9,
        "trial_days": 0,
        "max_users": None,
        "max_pets": None,
        "features": {"medical_records": True, "reminders": True, "cashbook": True, "reports": True},
    },
]


async def seed_default_plans(db: AsyncSession) -> int:
    """Create the default plans when the plans table is empty"""
    count = (await db.execute(select(func.count(Plan.id)))).scalar() or 0
    if count:
        return 0

    for data in DEFAULT_PLANS:
        db.add(Plan(**{**data, "features": json.dumps(data["features"])}))
    await db.commit()
    logger.info(f"✅ Seeded {len(DEFAULT_PLANS)} default plans")
    return len(DEFAULT_PLANS)


async def bootstrap_superadmin(db: AsyncSession):
    """
    Create or refresh the environment-based superadmin.
    Does nothing unless SEED_SUPERADMIN_EMAIL and SEED_SUPERADMIN_PASSWORD are set.
    """
    email = settings.SEED_SUPERADMIN_EMAIL.strip().lower()
    if not email or not settings.SEED_SUPERADMIN_PASSWORD:
        return None

    result = await db.execute(select(User).where(User.email == email))
    admin = result.scalar_one_or_none()
    if admin:
        admin.hashed_password = get_password_hash(settings.SEED_SUPERADMIN_PASSWORD)
        admin.full_name = settings.SEED_SUPERADMIN_FULL_NAME
        admin.is_active = True
        logger.info(f"✅ Updated bootstrap superadmin: {email}")
    else:
        admin = User(
            email=email,
            hashed_password=get_password_hash(settings.SEED_SUPERADMIN_PASSWORD),
            full_name=settings.SEED_SUPERADMIN_FULL_NAME,
            is_active=True,
        )
        db.add(admin)
        await db.flush()
        logger.info(f"✅ Created bootstrap superadmin: {email}")

    result = await db.execute(
        select(UserRole.id).where(UserRole.user_id == admin.id, UserRole.role == RoleName.SUPERADMIN.value)
    )
    if result.scalar_one_or_none() is None:
        db.add(UserRole(user_id=admin.id, company_id=None, role=RoleName.SUPERADMIN.value))

    await db.commit()
    return admin


async def is_database_empty(db: AsyncSession) -> bool:
    """True when no company exists yet"""
    return not ((await db.execute(select(func.count(Company.id)))).scalar() or 0)


async def seed_demo_company(db: AsyncSession) -> Company:
    """Demo clinic with an admin, a few clients, pets, services and products"""
    result = await db.execute(select(Plan).where(Plan.name == "pro"))
    plan = result.scalar_one_or_none()

    company = Company(
        name="PetPro Demo",
        phone="11999990000",
        address="Rua dos Pets, 100 - São Paulo/SP",
        status=CompanyStatus.ACTIVE.value,
        current_plan_id=plan.id if plan else None,
        timezone=settings.DEFAULT_TIMEZONE,
    )
    db.add(company)
    await db.flush()

    admin = User(
        email="demo@petpro.local",
        hashed_password=get_password_hash("demo123"),
        full_name="Administrador Demo",
        company_id=company.id,
        is_active=True,
    )
    db.add(admin)
    await db.flush()
    db.add(UserRole(user_id=admin.id, company_id=company.id, role=RoleName.ADMIN.value))

    clients = [
        Client(company_id=company.id, name="Ana Souza", email="ana@example.com", phone="11988887777"),
        Client(company_id=company.id, name="Bruno Lima", email="", phone="11977776666"),
    ]
    db.add_all(clients)
    await db.flush()

    today = date.today()
    db.add_all([
        Pet(company_id=company.id, client_id=clients[0].id, name="Thor", species="Cão", breed="Labrador",
            birth_date=today - timedelta(days=365 * 4)),
        Pet(company_id=company.id, client_id=clients[0].id, name="Mia", species="Gato", breed="SRD",
            birth_date=today - timedelta(days=365 * 2)),
        Pet(company_id=company.id, client_id=clients[1].id, name="Luna", species="Cão", breed="Poodle"),
    ])

    db.add_all([
        Service(company_id=company.id, name="Consulta", category="Clínica", duration_minutes=30, price=150.0,
                commission_pct=10),
        Service(company_id=company.id, name="Banho e tosa", category="Estética", duration_minutes=60, price=90.0,
                commission_pct=20),
        Service(company_id=company.id, name="Vacina V10", category="Vacinação", duration_minutes=15, price=120.0),
    ])

    db.add_all([
        Product(company_id=company.id, name="Ração Premium 15kg", category="Alimentação", stock=12, min_stock=5,
                price=289.9),
        Product(company_id=company.id, name="Antipulgas", category="Medicamentos", stock=2, min_stock=6,
                price=79.9),
        Product(company_id=company.id, name="Shampoo neutro", category="Higiene", stock=8, min_stock=8,
                price=34.5, unit="fr"),
    ])

    await db.commit()
    logger.info(f"✅ Demo company seeded (#{company.id}) - login demo@petpro.local / demo123")
    return company


async def seed_on_startup(db: AsyncSession):
    """Idempotent startup seeding"""
    await seed_default_plans(db)
    await bootstrap_superadmin(db)

    if settings.SEED_DEMO_DATA:
        if await is_database_empty(db):
            await seed_demo_company(db)
        else:
            logger.info("⏭️ Skipping demo data - companies already exist")


async def main():
    from database import async_session_maker, init_db

    logging.basicConfig(level=logging.INFO)
    await init_db()
    async with async_session_maker() as db:
        await seed_default_plans(db)
        await bootstrap_superadmin(db)
        if await is_database_empty(db):
            await seed_demo_company(db)
    logger.info(f"🌱 Seeding finished at {datetime.utcnow():%Y-%m-%d %H:%M:%S} UTC")


if __name__ == "__main__":
    asyncio.run(main())
