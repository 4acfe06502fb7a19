"""
Appointment scheduling.

Every create/update re-syncs the appointment's reminder job in the same
transaction; deleting an appointment cancels its pending reminders first.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from auth import require_permission
from database import get_db
from errors import bad_request, not_found
from models import Appointment, AppointmentStatus, Client, Company, Pet, Service
from pagination import ListParams
from reminders import cancel_appointment_reminders, sync_appointment_reminder
from schemas import AppointmentCreate, AppointmentUpdate, plain_values
from timezone_utils import get_company_today, local_day_start_utc, utc_to_local

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/appointments", tags=["Appointments"])

DISPLAY_STATUS = {
    AppointmentStatus.SCHEDULED.value: "pending",
    AppointmentStatus.IN_PROGRESS.value: "in-progress",
}

PET_TYPE_LABELS = {
    "Cão": "Cachorro",
}


def display_status(value: str) -> str:
    return DISPLAY_STATUS.get(value, value)


def build_appointment_row(appointment: Appointment, client: Client, pet: Pet, service: Service,
                          company_timezone: Optional[str] = None) -> dict:
    local = utc_to_local(appointment.scheduled_at, company_timezone)
    return {
        "id": appointment.id,
        "client_id": appointment.client_id,
        "pet_id": appointment.pet_id,
        "service_id": appointment.service_id,
        "scheduledAt": appointment.scheduled_at,
        "date": local.date().isoformat(),
        "time": local.strftime("%H:%M"),
        "duration": appointment.duration_minutes,
        "client": client.name if client else "",
        "pet": pet.name if pet else "",
        "petType": PET_TYPE_LABELS.get(pet.species, pet.species) if pet else "",
        "service": service.name if service else "",
        "status": display_status(appointment.status),
        "vet": appointment.vet_name or "",
        "notes": appointment.notes or "",
    }


async def _validate_references(db: AsyncSession, company_id: int, client_id: int, pet_id: int, service_id: int):
    """Client, pet and service must belong to the company and the pet to the client"""
    client = (await db.execute(
        select(Client).where(Client.id == client_id, Client.company_id == company_id)
    )).scalar_one_or_none()
    pet = (await db.execute(
        select(Pet).where(Pet.id == pet_id, Pet.company_id == company_id)
    )).scalar_one_or_none()
    service = (await db.execute(
        select(Service).where(Service.id == service_id, Service.company_id == company_id)
    )).scalar_one_or_none()

    if not client or not pet or not service:
        raise bad_request("Dados inválidos para o agendamento.")
    if pet.client_id != client.id:
        raise bad_request("Pet não pertence ao cliente informado.", field="pet_id")
    return client, pet, service


async def _get_appointment(db: AsyncSession, company_id: int, appointment_id: int) -> Appointment:
    result = await db.execute(
        select(Appointment).where(Appointment.id == appointment_id, Appointment.company_id == company_id)
    )
    appointment = result.scalar_one_or_none()
    if not appointment:
        raise not_found("Agendamento não encontrado.")
    return appointment


@router.get("")
async def list_appointments(
    status_filter: Optional[AppointmentStatus] = Query(None, alias="status"),
    params: ListParams = Depends(),
    company: Company = Depends(require_permission("appointments", "view")),
    db: AsyncSession = Depends(get_db)
):
    """Upcoming appointments, from the start of today in the company's timezone"""
    today_start = local_day_start_utc(get_company_today(company.timezone), company.timezone)

    query = (
        select(Appointment, Client, Pet, Service)
        .join(Client, Client.id == Appointment.client_id)
        .join(Pet, Pet.id == Appointment.pet_id)
        .join(Service, Service.id == Appointment.service_id)
        .where(Appointment.company_id == company.id, Appointment.scheduled_at >= today_start)
    )
    if status_filter:
        query = query.where(Appointment.status == status_filter.value)
    if params.pattern:
        query = query.where(or_(
            Client.name.ilike(params.pattern),
            Pet.name.ilike(params.pattern),
            Service.name.ilike(params.pattern),
        ))

    result = await db.execute(
        query.order_by(params.sort(Appointment.scheduled_at, default="asc"))
        .offset(params.offset)
        .limit(params.limit)
    )
    return [build_appointment_row(*row, company.timezone) for row in result.all()]


@router.get("/{appointment_id}")
async def get_appointment(
    appointment_id: int,
    company: Company = Depends(require_permission("appointments", "view")),
    db: AsyncSession = Depends(get_db)
):
    appointment = await _get_appointment(db, company.id, appointment_id)
    client = await db.get(Client, appointment.client_id)
    pet = await db.get(Pet, appointment.pet_id)
    service = await db.get(Service, appointment.service_id)
    return build_appointment_row(appointment, client, pet, service, company.timezone)


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_appointment(
    appointment_data: AppointmentCreate,
    company: Company = Depends(require_permission("appointments", "create")),
    db: AsyncSession = Depends(get_db)
):
    client, pet, service = await _validate_references(
        db, company.id, appointment_data.client_id, appointment_data.pet_id, appointment_data.service_id
    )

    appointment = Appointment(company_id=company.id, **plain_values(appointment_data.model_dump()))
    db.add(appointment)
    await db.flush()  # Get appointment ID for the reminder job

    await sync_appointment_reminder(db, appointment)
    await db.commit()
    await db.refresh(appointment)

    logger.info(f"📅 Appointment #{appointment.id} created for {appointment.scheduled_at} (company #{company.id})")
    return build_appointment_row(appointment, client, pet, service, company.timezone)


@router.put("/{appointment_id}")
async def update_appointment(
    appointment_id: int,
    appointment_data: AppointmentUpdate,
    company: Company = Depends(require_permission("appointments", "edit")),
    db: AsyncSession = Depends(get_db)
):
    appointment = await _get_appointment(db, company.id, appointment_id)
    data = {
        key: value
        for key, value in plain_values(appointment_data.model_dump(exclude_unset=True)).items()
        if value is not None or key in ("vet_name", "notes")
    }

    client, pet, service = await _validate_references(
        db, company.id,
        data.get("client_id", appointment.client_id),
        data.get("pet_id", appointment.pet_id),
        data.get("service_id", appointment.service_id),
    )

    rescheduled = "scheduled_at" in data and data["scheduled_at"] != appointment.scheduled_at
    for field, value in data.items():
        setattr(appointment, field, value)

    await db.flush()
    await sync_appointment_reminder(db, appointment, rescheduled=rescheduled)
    await db.commit()
    await db.refresh(appointment)

    return build_appointment_row(appointment, client, pet, service, company.timezone)


@router.delete("/{appointment_id}")
async def delete_appointment(
    appointment_id: int,
    company: Company = Depends(require_permission("appointments", "delete")),
    db: AsyncSession = Depends(get_db)
):
    appointment = await _get_appointment(db, company.id, appointment_id)

    cancelled = await cancel_appointment_reminders(db, appointment.id)
    await db.delete(appointment)
    await db.commit()

    logger.info(f"🗑️ Appointment #{appointment_id} deleted, {cancelled} reminder(s) cancelled")
    return {"ok": True}
