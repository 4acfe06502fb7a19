"""
Appointment reminders.

A reminder is a ReminderJob row with a future `scheduled_for`. Appointment
writes upsert the job (sync_appointment_reminder); a poller picks due rows
ordered by `scheduled_for` and delivers them once (process_due_reminders).
Failed deliveries are recorded and not retried.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import select, update, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from auth import require_permission
from config import settings
from database import get_db
from email_service import email_service
from errors import ApiError, not_found
from models import (
    Appointment, AppointmentStatus, Client, Company, NotificationSettings, Pet,
    ReminderChannel, ReminderJob, ReminderStatus, Service
)
from pagination import ListParams
from plan_access import require_module
from schemas import ProcessDueRequest
from timezone_utils import utc_to_local

logger = logging.getLogger(__name__)

REMINDER_TYPE = "appointment_upcoming"
CLOSED_APPOINTMENT_STATUSES = {AppointmentStatus.CANCELLED.value, AppointmentStatus.COMPLETED.value}


async def reminders_enabled(db: AsyncSession, company_id: int) -> bool:
    result = await db.execute(
        select(NotificationSettings.reminders).where(NotificationSettings.company_id == company_id)
    )
    value = result.scalar_one_or_none()
    return True if value is None else bool(value)


async def sync_appointment_reminder(
    db: AsyncSession,
    appointment: Appointment,
    rescheduled: bool = False,
    now: Optional[datetime] = None
) -> Optional[ReminderJob]:
    """
    Upsert the reminder job of an appointment (keyed on appointment + type).

    - Closed, past or reminder-disabled appointments: a pending job is cancelled
    - Otherwise the job is (re)scheduled for scheduled_at - REMINDER_LEAD_HOURS,
      clamped to now
    - A sent or failed job is left alone unless the appointment was rescheduled

    Does not commit; the caller owns the transaction.
    """
    now = now or datetime.utcnow()
    result = await db.execute(
        select(ReminderJob).where(
            ReminderJob.appointment_id == appointment.id,
            ReminderJob.reminder_type == REMINDER_TYPE
        )
    )
    job = result.scalar_one_or_none()

    should_schedule = (
        appointment.status not in CLOSED_APPOINTMENT_STATUSES
        and appointment.scheduled_at > now
        and await reminders_enabled(db, appointment.company_id)
    )
    if not should_schedule:
        if job and job.status == ReminderStatus.PENDING.value:
            job.status = ReminderStatus.CANCELLED.value
            logger.info(f"🛑 Cancelled reminder #{job.id} for appointment #{appointment.id}")
        return job

    scheduled_for = max(appointment.scheduled_at - timedelta(hours=settings.REMINDER_LEAD_HOURS), now)
    client = await db.get(Client, appointment.client_id)
    channel = ReminderChannel.EMAIL.value if client and client.email else ReminderChannel.WHATSAPP.value

    if job is None:
        job = ReminderJob(
            company_id=appointment.company_id,
            appointment_id=appointment.id,
            reminder_type=REMINDER_TYPE,
            channel=channel,
            status=ReminderStatus.PENDING.value,
            scheduled_for=scheduled_for,
        )
        db.add(job)
        logger.info(f"📅 Scheduled reminder for appointment #{appointment.id} at {scheduled_for}")
        return job

    if job.status in (ReminderStatus.SENT.value, ReminderStatus.FAILED.value) and not rescheduled:
        return job

    job.status = ReminderStatus.PENDING.value
    job.channel = channel
    job.scheduled_for = scheduled_for
    job.sent_at = None
    job.error_message = None
    logger.info(f"🔁 Rescheduled reminder #{job.id} for appointment #{appointment.id} at {scheduled_for}")
    return job


async def cancel_appointment_reminders(db: AsyncSession, appointment_id: int) -> int:
    """Cancel every pending reminder of an appointment. Does not commit."""
    result = await db.execute(
        update(ReminderJob)
        .where(
            ReminderJob.appointment_id == appointment_id,
            ReminderJob.status == ReminderStatus.PENDING.value
        )
        .values(status=ReminderStatus.CANCELLED.value, updated_at=datetime.utcnow())
    )
    return result.rowcount or 0


async def cancel_company_reminders(db: AsyncSession, company_id: int) -> int:
    result = await db.execute(
        update(ReminderJob)
        .where(
            ReminderJob.company_id == company_id,
            ReminderJob.status == ReminderStatus.PENDING.value
        )
        .values(status=ReminderStatus.CANCELLED.value, updated_at=datetime.utcnow())
    )
    return result.rowcount or 0


async def resync_company_reminders(db: AsyncSession, company_id: int) -> int:
    """Re-create reminders for every upcoming open appointment of a company"""
    now = datetime.utcnow()
    result = await db.execute(
        select(Appointment).where(
            Appointment.company_id == company_id,
            Appointment.scheduled_at > now,
            Appointment.status.notin_(CLOSED_APPOINTMENT_STATUSES)
        )
    )
    appointments = result.scalars().all()
    for appointment in appointments:
        await sync_appointment_reminder(db, appointment, rescheduled=False, now=now)
    return len(appointments)


async def deliver_reminder(db: AsyncSession, job: ReminderJob) -> Optional[str]:
    """
    Deliver one reminder. Returns None on success or the error message.
    """
    appointment = await db.get(Appointment, job.appointment_id) if job.appointment_id else None
    if appointment is None:
        return "Agendamento não encontrado."

    client = await db.get(Client, appointment.client_id)
    pet = await db.get(Pet, appointment.pet_id)
    service = await db.get(Service, appointment.service_id)
    company = await db.get(Company, appointment.company_id)

    if job.channel == ReminderChannel.EMAIL.value:
        if not client or not client.email:
            return "Cliente sem e-mail cadastrado."
        sent = await email_service.send_appointment_reminder_email(
            client_email=client.email,
            client_name=client.name,
            pet_name=pet.name if pet else "",
            service_name=service.name if service else "",
            business_name=company.name if company else "PetPro",
            when=utc_to_local(appointment.scheduled_at, company.timezone if company else None),
        )
        return None if sent else "Falha ao enviar e-mail."

    # No WhatsApp provider is wired in; the reminder is logged for the front desk
    logger.info(
        f"💬 WhatsApp reminder for appointment #{appointment.id} "
        f"({client.name if client else '?'} / {client.phone if client else '?'})"
    )
    return None


async def process_due_reminders(
    db: AsyncSession,
    company_id: Optional[int] = None,
    limit: int = 50,
    now: Optional[datetime] = None
) -> dict:
    """
    Deliver pending reminders whose scheduled_for has passed, oldest first.

    Each job ends as `sent` or `failed`; there is no retry.
    """
    now = now or datetime.utcnow()
    query = (
        select(ReminderJob)
        .where(
            ReminderJob.status == ReminderStatus.PENDING.value,
            ReminderJob.scheduled_for <= now
        )
        .order_by(ReminderJob.scheduled_for.asc(), ReminderJob.id.asc())
        .limit(limit)
    )
    if company_id is not None:
        query = query.where(ReminderJob.company_id == company_id)

    jobs = (await db.execute(query)).scalars().all()
    logger.info(f"📊 Found {len(jobs)} due reminder(s)")

    processed = []
    failed = 0
    for job in jobs:
        try:
            error_msg = await deliver_reminder(db, job)
        except Exception as e:
            logger.error(f"❌ Error delivering reminder #{job.id}: {str(e)}")
            error_msg = str(e)

        if error_msg is None:
            job.status = ReminderStatus.SENT.value
            job.sent_at = datetime.utcnow()
            job.error_message = None
            logger.info(f"✅ Sent reminder #{job.id} via {job.channel}")
        else:
            job.status = ReminderStatus.FAILED.value
            job.error_message = error_msg
            failed += 1
            logger.warning(f"⚠️ Reminder #{job.id} failed: {error_msg}")

        processed.append({
            "id": job.id,
            "reminder_type": job.reminder_type,
            "channel": job.channel,
            "status": job.status,
            "scheduled_for": job.scheduled_for,
            "sent_at": job.sent_at,
        })

    await db.commit()
    return {"processed": len(processed), "failed": failed, "reminders": processed}


# =============================================================================
# ROUTES
# =============================================================================

router = APIRouter(
    prefix="/api/reminders",
    tags=["Reminders"],
    dependencies=[Depends(require_module("reminders", "Lembretes automáticos"))]
)


def _build_reminder_response(job: ReminderJob, pet_name, client_name, appointment_at) -> dict:
    return {
        "id": job.id,
        "appointment_id": job.appointment_id,
        "reminder_type": job.reminder_type,
        "channel": job.channel,
        "status": job.status,
        "scheduled_for": job.scheduled_for,
        "sent_at": job.sent_at,
        "error_message": job.error_message,
        "created_at": job.created_at,
        "pet_name": pet_name,
        "client_name": client_name,
        "appointment_at": appointment_at,
    }


def _reminder_query(company_id: int):
    return (
        select(ReminderJob, Pet.name, Client.name, Appointment.scheduled_at)
        .outerjoin(Appointment, Appointment.id == ReminderJob.appointment_id)
        .outerjoin(Pet, Pet.id == Appointment.pet_id)
        .outerjoin(Client, Client.id == Appointment.client_id)
        .where(ReminderJob.company_id == company_id)
    )


@router.get("")
async def list_reminders(
    status_filter: Optional[ReminderStatus] = Query(None, alias="status"),
    params: ListParams = Depends(),
    company: Company = Depends(require_permission("reminders", "view")),
    db: AsyncSession = Depends(get_db)
):
    """List reminder jobs with pet/client context (?status=&q=)"""
    query = _reminder_query(company.id)
    if status_filter:
        query = query.where(ReminderJob.status == status_filter.value)
    if params.pattern:
        query = query.where(or_(Pet.name.ilike(params.pattern), Client.name.ilike(params.pattern)))

    total = (await db.execute(select(func.count()).select_from(query.subquery()))).scalar() or 0
    result = await db.execute(
        query.order_by(params.sort(ReminderJob.scheduled_for)).offset(params.offset).limit(params.limit)
    )
    return {
        "reminders": [_build_reminder_response(*row) for row in result.all()],
        "total": total,
        "page": params.page,
        "limit": params.limit,
    }


@router.post("/process-due")
async def process_due(
    payload: Optional[ProcessDueRequest] = None,
    company: Company = Depends(require_permission("reminders", "create")),
    db: AsyncSession = Depends(get_db)
):
    """Deliver this company's due reminders now"""
    limit = payload.limit if payload else settings.REMINDER_BATCH_SIZE
    return await process_due_reminders(db, company_id=company.id, limit=limit)


@router.put("/{reminder_id}/cancel")
async def cancel_reminder(
    reminder_id: int,
    company: Company = Depends(require_permission("reminders", "edit")),
    db: AsyncSession = Depends(get_db)
):
    result = await db.execute(
        select(ReminderJob).where(ReminderJob.id == reminder_id, ReminderJob.company_id == company.id)
    )
    job = result.scalar_one_or_none()
    if not job:
        raise not_found("Lembrete não encontrado.")
    if job.status != ReminderStatus.PENDING.value:
        raise ApiError(status.HTTP_409_CONFLICT, "Apenas lembretes pendentes podem ser cancelados.")

    job.status = ReminderStatus.CANCELLED.value
    await db.commit()

    row = (await db.execute(_reminder_query(company.id).where(ReminderJob.id == job.id))).one()
    return _build_reminder_response(*row)
