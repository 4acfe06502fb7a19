"""
Medical records (clinical history per pet).
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, require_permission
from database import get_db
from errors import bad_request, not_found
from models import Appointment, Client, Company, MedicalRecord, Pet, User
from pagination import ListParams
from plan_access import require_module
from schemas import MedicalRecordCreate, MedicalRecordUpdate

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/medical-records",
    tags=["Medical Records"],
    dependencies=[Depends(require_module("medical_records", "Prontuário eletrônico"))]
)


def _record_row(record: MedicalRecord, pet_name: Optional[str], client_name: Optional[str]) -> dict:
    return {
        "id": record.id,
        "pet_id": record.pet_id,
        "appointment_id": record.appointment_id,
        "record_date": record.record_date,
        "weight_kg": record.weight_kg,
        "temperature_c": record.temperature_c,
        "diagnosis": record.diagnosis or "",
        "treatment": record.treatment or "",
        "notes": record.notes or "",
        "pet_name": pet_name or "",
        "client_name": client_name or "",
        "created_at": record.created_at,
    }


def _record_query(company_id: int):
    return (
        select(MedicalRecord, Pet.name, Client.name)
        .join(Pet, Pet.id == MedicalRecord.pet_id)
        .join(Client, Client.id == Pet.client_id)
        .where(MedicalRecord.company_id == company_id)
    )


async def _validate_links(db: AsyncSession, company_id: int, pet_id: int, appointment_id: Optional[int]) -> Pet:
    """The pet must be in the company; a linked appointment must be this pet's"""
    pet = (await db.execute(
        select(Pet).where(Pet.id == pet_id, Pet.company_id == company_id)
    )).scalar_one_or_none()
    if not pet:
        raise bad_request("Pet inválido.", field="pet_id")

    if appointment_id is not None:
        appointment = (await db.execute(
            select(Appointment).where(
                Appointment.id == appointment_id,
                Appointment.company_id == company_id,
                Appointment.pet_id == pet.id
            )
        )).scalar_one_or_none()
        if not appointment:
            raise bad_request("Agendamento inválido para este pet.", field="appointment_id")
    return pet


async def _get_record_row(db: AsyncSession, company_id: int, record_id: int):
    row = (await db.execute(_record_query(company_id).where(MedicalRecord.id == record_id))).first()
    if not row:
        raise not_found("Prontuário não encontrado.")
    return row


@router.get("")
async def list_medical_records(
    pet_id: Optional[int] = Query(None),
    params: ListParams = Depends(),
    company: Company = Depends(require_permission("medical_records", "view")),
    db: AsyncSession = Depends(get_db)
):
    """Records newest first (?pet_id=&q= matches diagnosis, pet or client)"""
    query = _record_query(company.id)
    if pet_id is not None:
        query = query.where(MedicalRecord.pet_id == pet_id)
    if params.pattern:
        query = query.where(or_(
            MedicalRecord.diagnosis.ilike(params.pattern),
            Pet.name.ilike(params.pattern),
            Client.name.ilike(params.pattern),
        ))

    result = await db.execute(
        query.order_by(params.sort(MedicalRecord.record_date), MedicalRecord.id.desc())
        .offset(params.offset)
        .limit(params.limit)
    )
    return [_record_row(*row) for row in result.all()]


@router.get("/{record_id}")
async def get_medical_record(
    record_id: int,
    company: Company = Depends(require_permission("medical_records", "view")),
    db: AsyncSession = Depends(get_db)
):
    return _record_row(*await _get_record_row(db, company.id, record_id))


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_medical_record(
    record_data: MedicalRecordCreate,
    company: Company = Depends(require_permission("medical_records", "create")),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    await _validate_links(db, company.id, record_data.pet_id, record_data.appointment_id)

    record = MedicalRecord(company_id=company.id, created_by=current_user.id, **record_data.model_dump())
    db.add(record)
    await db.commit()

    return _record_row(*await _get_record_row(db, company.id, record.id))


@router.put("/{record_id}")
async def update_medical_record(
    record_id: int,
    record_data: MedicalRecordUpdate,
    company: Company = Depends(require_permission("medical_records", "edit")),
    db: AsyncSession = Depends(get_db)
):
    record, _, _ = await _get_record_row(db, company.id, record_id)
    data = record_data.model_dump(exclude_unset=True)

    if "pet_id" in data or "appointment_id" in data:
        await _validate_links(
            db, company.id,
            data.get("pet_id") or record.pet_id,
            data.get("appointment_id", record.appointment_id),
        )

    for field, value in data.items():
        if field in ("pet_id", "record_date") and value is None:
            continue
        setattr(record, field, value)

    await db.commit()
    return _record_row(*await _get_record_row(db, company.id, record.id))


@router.delete("/{record_id}")
async def delete_medical_record(
    record_id: int,
    company: Company = Depends(require_permission("medical_records", "delete")),
    db: AsyncSession = Depends(get_db)
):
    record, _, _ = await _get_record_row(db, company.id, record_id)
    await db.delete(record)
    await db.commit()
    return {"ok": True}
