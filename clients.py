"""
Clients (pet owners) and their pets.
"""
import logging
from datetime import date, datetime
from typing import Optional

from fastapi import APIRouter, Depends, status
from sqlalchemy import select, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from auth import require_permission
from database import get_db
from errors import bad_request, not_found
from models import Appointment, Client, Company, Pet
from pagination import ListParams
from plan_access import assert_plan_limit
from schemas import ClientCreate, ClientUpdate, PetCreate, PetUpdate
from timezone_utils import get_company_today

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Clients"])


def _iso_day(value: Optional[datetime]) -> str:
    return value.date().isoformat() if value else ""


def pet_age(birth_date: Optional[date], today: date) -> str:
    """Whole years since birth_date as 'N anos' ('' when unknown)"""
    if not birth_date:
        return ""
    years = today.year - birth_date.year - ((today.month, today.day) < (birth_date.month, birth_date.day))
    return f"{max(years, 0)} anos"


def _last_visits(key_column):
    """Subquery: latest past appointment per client/pet"""
    return (
        select(key_column.label("key"), func.max(Appointment.scheduled_at).label("last_visit"))
        .where(Appointment.scheduled_at <= datetime.utcnow())
        .group_by(key_column)
        .subquery()
    )


async def get_company_client(db: AsyncSession, company_id: int, client_id: int) -> Optional[Client]:
    result = await db.execute(select(Client).where(Client.id == client_id, Client.company_id == company_id))
    return result.scalar_one_or_none()


async def get_company_pet(db: AsyncSession, company_id: int, pet_id: int) -> Optional[Pet]:
    result = await db.execute(select(Pet).where(Pet.id == pet_id, Pet.company_id == company_id))
    return result.scalar_one_or_none()


# ==================== CLIENTS ====================

def _client_row(client: Client, pets: int = 0, last_visit: Optional[datetime] = None) -> dict:
    return {
        "id": client.id,
        "name": client.name,
        "email": client.email or "",
        "phone": client.phone or "",
        "address": client.address or "",
        "pets": pets,
        "lastVisit": _iso_day(last_visit),
        "status": "active",
    }


@router.get("/clients")
async def list_clients(
    params: ListParams = Depends(),
    company: Company = Depends(require_permission("clients", "view")),
    db: AsyncSession = Depends(get_db)
):
    """List clients with pet count and last visit (?q= matches name or email)"""
    pet_counts = (
        select(Pet.client_id, func.count(Pet.id).label("pets"))
        .where(Pet.company_id == company.id)
        .group_by(Pet.client_id)
        .subquery()
    )
    visits = _last_visits(Appointment.client_id)

    query = (
        select(Client, func.coalesce(pet_counts.c.pets, 0), visits.c.last_visit)
        .outerjoin(pet_counts, pet_counts.c.client_id == Client.id)
        .outerjoin(visits, visits.c.key == Client.id)
        .where(Client.company_id == company.id)
    )
    if params.pattern:
        query = query.where(or_(Client.name.ilike(params.pattern), Client.email.ilike(params.pattern)))

    result = await db.execute(
        query.order_by(params.sort(Client.name, default="asc")).offset(params.offset).limit(params.limit)
    )
    return [_client_row(client, pets, last_visit) for client, pets, last_visit in result.all()]


@router.post("/clients", status_code=status.HTTP_201_CREATED)
async def create_client(
    client_data: ClientCreate,
    company: Company = Depends(require_permission("clients", "create")),
    db: AsyncSession = Depends(get_db)
):
    client = Client(company_id=company.id, **client_data.model_dump())
    db.add(client)
    await db.commit()
    await db.refresh(client)
    return _client_row(client)


@router.put("/clients/{client_id}")
async def update_client(
    client_id: int,
    client_data: ClientUpdate,
    company: Company = Depends(require_permission("clients", "edit")),
    db: AsyncSession = Depends(get_db)
):
    client = await get_company_client(db, company.id, client_id)
    if not client:
        raise not_found("Cliente não encontrado.")

    for field, value in client_data.model_dump(exclude_unset=True).items():
        if field == "name" and value is None:
            continue
        setattr(client, field, value)

    await db.commit()
    await db.refresh(client)
    pets = (await db.execute(select(func.count(Pet.id)).where(Pet.client_id == client.id))).scalar() or 0
    return _client_row(client, pets)


@router.delete("/clients/{client_id}")
async def delete_client(
    client_id: int,
    company: Company = Depends(require_permission("clients", "delete")),
    db: AsyncSession = Depends(get_db)
):
    """Delete a client along with their pets and appointments"""
    client = await get_company_client(db, company.id, client_id)
    if not client:
        raise not_found("Cliente não encontrado.")

    await db.delete(client)
    await db.commit()
    logger.info(f"🗑️ Client #{client_id} deleted (company #{company.id})")
    return {"ok": True}


# ==================== PETS ====================

def _pet_row(pet: Pet, owner: str, last_visit: Optional[datetime], today: date) -> dict:
    return {
        "id": pet.id,
        "client_id": pet.client_id,
        "name": pet.name,
        "species": pet.species,
        "breed": pet.breed or "",
        "birth_date": pet.birth_date,
        "age": pet_age(pet.birth_date, today),
        "owner": owner,
        "lastVisit": _iso_day(last_visit),
        "status": "healthy",
    }


@router.get("/pets")
async def list_pets(
    params: ListParams = Depends(),
    company: Company = Depends(require_permission("pets", "view")),
    db: AsyncSession = Depends(get_db)
):
    """List pets with owner name and age (?q= matches pet or owner name)"""
    visits = _last_visits(Appointment.pet_id)
    query = (
        select(Pet, Client.name, visits.c.last_visit)
        .join(Client, Client.id == Pet.client_id)
        .outerjoin(visits, visits.c.key == Pet.id)
        .where(Pet.company_id == company.id)
    )
    if params.pattern:
        query = query.where(or_(Pet.name.ilike(params.pattern), Client.name.ilike(params.pattern)))

    result = await db.execute(
        query.order_by(params.sort(Pet.created_at)).offset(params.offset).limit(params.limit)
    )
    today = get_company_today(company.timezone)
    return [_pet_row(pet, owner, last_visit, today) for pet, owner, last_visit in result.all()]


async def _require_client(db: AsyncSession, company_id: int, client_id: int) -> Client:
    client = await get_company_client(db, company_id, client_id)
    if not client:
        raise bad_request("Tutor inválido.", field="client_id")
    return client


@router.post("/pets", status_code=status.HTTP_201_CREATED)
async def create_pet(
    pet_data: PetCreate,
    company: Company = Depends(require_permission("pets", "create")),
    db: AsyncSession = Depends(get_db)
):
    client = await _require_client(db, company.id, pet_data.client_id)
    await assert_plan_limit(db, company, "pets")

    pet = Pet(company_id=company.id, **pet_data.model_dump())
    db.add(pet)
    await db.commit()
    await db.refresh(pet)
    return _pet_row(pet, client.name, None, get_company_today(company.timezone))


@router.put("/pets/{pet_id}")
async def update_pet(
    pet_id: int,
    pet_data: PetUpdate,
    company: Company = Depends(require_permission("pets", "edit")),
    db: AsyncSession = Depends(get_db)
):
    pet = await get_company_pet(db, company.id, pet_id)
    if not pet:
        raise not_found("Pet não encontrado.")

    data = pet_data.model_dump(exclude_unset=True)
    if data.get("client_id") is not None:
        await _require_client(db, company.id, data["client_id"])

    for field, value in data.items():
        if field in ("client_id", "name", "species") and value is None:
            continue
        setattr(pet, field, value)

    await db.commit()
    await db.refresh(pet)
    client = await db.get(Client, pet.client_id)
    return _pet_row(pet, client.name if client else "", None, get_company_today(company.timezone))


@router.delete("/pets/{pet_id}")
async def delete_pet(
    pet_id: int,
    company: Company = Depends(require_permission("pets", "delete")),
    db: AsyncSession = Depends(get_db)
):
    pet = await get_company_pet(db, company.id, pet_id)
    if not pet:
        raise not_found("Pet não encontrado.")

    await db.delete(pet)
    await db.commit()
    return {"ok": True}
