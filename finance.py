"""
Financial ledger and cashbook.

Every cash entry is backed by a ledger transaction; both rows are written in
one database transaction (manual entries and appointment payments).
"""
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy import select, delete, update, func, case, or_
from sqlalchemy.ext.asyncio import AsyncSession

from audit import write_audit_log
from auth import get_current_user, require_permission
from database import get_db
from errors import bad_request, conflict, not_found
from models import (
    Appointment, AppointmentStatus, CashEntry, Client, Company, EntryType, Pet,
    Service, Transaction, TransactionType, User
)
from pagination import ListParams
from plan_access import require_module
from schemas import (
    AppointmentPaymentRequest, CashEntryCreate, TransactionCreate, TransactionUpdate, plain_values
)
from timezone_utils import get_company_today, local_day_start_utc, month_start, utc_to_local

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/transactions", tags=["Financial"])
cashbook_router = APIRouter(
    prefix="/api/cashbook",
    tags=["Cashbook"],
    dependencies=[Depends(require_module("cashbook", "Livro caixa"))]
)

CASHBOOK_CATEGORY = "Caixa"
APPOINTMENT_CATEGORY = "Atendimento"


def format_brl(value: float) -> str:
    """1234.5 -> 'R$ 1.234,50'"""
    formatted = f"{abs(value or 0):,.2f}".replace(",", "X").replace(".", ",").replace("X", ".")
    return f"{'-' if (value or 0) < 0 else ''}R$ {formatted}"


def _signed_amount():
    return case((CashEntry.entry_type == EntryType.INFLOW.value, CashEntry.amount), else_=-CashEntry.amount)


async def cash_balance(db: AsyncSession, company_id: int) -> float:
    result = await db.execute(
        select(func.coalesce(func.sum(_signed_amount()), 0)).where(CashEntry.company_id == company_id)
    )
    return float(result.scalar() or 0)


async def month_totals(db: AsyncSession, company: Company) -> dict:
    """Month-to-date revenue and expenses in the company's timezone"""
    first_day = month_start(get_company_today(company.timezone))
    result = await db.execute(
        select(Transaction.type, func.coalesce(func.sum(Transaction.value), 0))
        .where(Transaction.company_id == company.id, Transaction.date >= first_day)
        .group_by(Transaction.type)
    )
    totals = {row[0]: float(row[1]) for row in result.all()}
    return {
        "revenue": totals.get(TransactionType.REVENUE.value, 0.0),
        "expenses": totals.get(TransactionType.EXPENSE.value, 0.0),
    }


# ==================== TRANSACTIONS ====================

def _transaction_row(txn: Transaction) -> dict:
    return {
        "id": txn.id,
        "type": txn.type,
        "date": txn.date,
        "description": txn.description,
        "category": txn.category or "",
        "value": txn.value,
        "status": txn.status,
        "payment_method": txn.payment_method,
        "appointment_id": txn.appointment_id,
    }


async def _get_transaction(db: AsyncSession, company_id: int, transaction_id: int) -> Transaction:
    result = await db.execute(
        select(Transaction).where(Transaction.id == transaction_id, Transaction.company_id == company_id)
    )
    txn = result.scalar_one_or_none()
    if not txn:
        raise not_found("Transação não encontrada.")
    return txn


@router.get("")
async def list_transactions(
    type_filter: str = Query("all", alias="type", pattern="^(all|revenue|expense)$"),
    params: ListParams = Depends(),
    company: Company = Depends(require_permission("financial", "view")),
    db: AsyncSession = Depends(get_db)
):
    """Revenues and expenses plus month-to-date stats"""
    query = select(Transaction).where(Transaction.company_id == company.id)
    if type_filter != "all":
        query = query.where(Transaction.type == type_filter)
    if params.pattern:
        query = query.where(or_(
            Transaction.description.ilike(params.pattern),
            Transaction.category.ilike(params.pattern),
        ))

    result = await db.execute(
        query.order_by(params.sort(Transaction.date), Transaction.id.desc())
        .offset(params.offset)
        .limit(params.limit)
    )
    transactions = result.scalars().all()

    totals = await month_totals(db, company)
    return {
        "revenues": [_transaction_row(t) for t in transactions if t.type == TransactionType.REVENUE.value],
        "expenses": [_transaction_row(t) for t in transactions if t.type == TransactionType.EXPENSE.value],
        "stats": {
            "revenue": format_brl(totals["revenue"]),
            "expenses": format_brl(totals["expenses"]),
            "net": format_brl(totals["revenue"] - totals["expenses"]),
            "cash": format_brl(await cash_balance(db, company.id)),
        },
    }


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_transaction(
    transaction_data: TransactionCreate,
    company: Company = Depends(require_permission("financial", "create")),
    db: AsyncSession = Depends(get_db)
):
    txn = Transaction(company_id=company.id, **plain_values(transaction_data.model_dump()))
    db.add(txn)
    await db.commit()
    await db.refresh(txn)
    return _transaction_row(txn)


@router.put("/{transaction_id}")
async def update_transaction(
    transaction_id: int,
    transaction_data: TransactionUpdate,
    company: Company = Depends(require_permission("financial", "edit")),
    db: AsyncSession = Depends(get_db)
):
    txn = await _get_transaction(db, company.id, transaction_id)
    for field, value in plain_values(transaction_data.model_dump(exclude_unset=True)).items():
        if value is None and field != "category":
            continue
        setattr(txn, field, value)

    await db.commit()
    await db.refresh(txn)
    return _transaction_row(txn)


@router.delete("/{transaction_id}")
async def delete_transaction(
    transaction_id: int,
    company: Company = Depends(require_permission("financial", "delete")),
    db: AsyncSession = Depends(get_db)
):
    """Delete a transaction and the cash entries backed by it"""
    txn = await _get_transaction(db, company.id, transaction_id)
    await db.execute(delete(CashEntry).where(CashEntry.transaction_id == txn.id))
    await db.delete(txn)
    await db.commit()
    return {"ok": True}


# ==================== CASHBOOK ====================

def _cash_entry_row(entry: CashEntry, transaction_status: Optional[str]) -> dict:
    return {
        "id": entry.id,
        "transaction_id": entry.transaction_id,
        "entry_type": entry.entry_type,
        "amount": entry.amount,
        "payment_method": entry.payment_method,
        "description": entry.description or "",
        "occurred_at": entry.occurred_at,
        "reference_type": entry.reference_type,
        "reference_id": entry.reference_id,
        "transaction_status": transaction_status,
    }


@cashbook_router.get("")
async def get_cashbook(
    entry_type: Optional[EntryType] = Query(None),
    params: ListParams = Depends(),
    company: Company = Depends(require_permission("cashbook", "view")),
    db: AsyncSession = Depends(get_db)
):
    """Cash entries with all-time and month-to-date totals"""
    month_begin = local_day_start_utc(month_start(get_company_today(company.timezone)), company.timezone)
    inflow = case((CashEntry.entry_type == EntryType.INFLOW.value, CashEntry.amount), else_=0)
    outflow = case((CashEntry.entry_type == EntryType.OUTFLOW.value, CashEntry.amount), else_=0)
    in_month = CashEntry.occurred_at >= month_begin

    totals = (await db.execute(
        select(
            func.coalesce(func.sum(inflow), 0),
            func.coalesce(func.sum(outflow), 0),
            func.coalesce(func.sum(case((in_month, inflow), else_=0)), 0),
            func.coalesce(func.sum(case((in_month, outflow), else_=0)), 0),
        ).where(CashEntry.company_id == company.id)
    )).one()
    total_inflow, total_outflow, inflow_month, outflow_month = (float(v) for v in totals)

    query = (
        select(CashEntry, Transaction.status)
        .join(Transaction, Transaction.id == CashEntry.transaction_id)
        .where(CashEntry.company_id == company.id)
    )
    if entry_type:
        query = query.where(CashEntry.entry_type == entry_type.value)
    if params.pattern:
        query = query.where(CashEntry.description.ilike(params.pattern))

    result = await db.execute(
        query.order_by(params.sort(CashEntry.occurred_at), CashEntry.id.desc())
        .offset(params.offset)
        .limit(params.limit)
    )
    return {
        "stats": {
            "total_inflow": total_inflow,
            "total_outflow": total_outflow,
            "balance": total_inflow - total_outflow,
            "inflow_month": inflow_month,
            "outflow_month": outflow_month,
        },
        "entries": [_cash_entry_row(*row) for row in result.all()],
    }


async def create_cash_entry(db: AsyncSession, company: Company, user_id: Optional[int],
                            payload: CashEntryCreate) -> CashEntry:
    """
    Insert a manual cash movement and its ledger transaction atomically.

    inflow -> revenue, outflow -> expense (category 'Caixa', status 'paid').
    """
    occurred_at = payload.occurred_at or datetime.utcnow()
    txn_type = TransactionType.REVENUE if payload.entry_type == EntryType.INFLOW else TransactionType.EXPENSE

    try:
        txn = Transaction(
            company_id=company.id,
            type=txn_type.value,
            date=utc_to_local(occurred_at, company.timezone).date(),
            description=payload.description,
            category=CASHBOOK_CATEGORY,
            value=payload.amount,
            status="paid",
            payment_method=payload.payment_method.value,
        )
        db.add(txn)
        await db.flush()  # Get transaction ID

        entry = CashEntry(
            company_id=company.id,
            transaction_id=txn.id,
            entry_type=payload.entry_type.value,
            amount=payload.amount,
            payment_method=payload.payment_method.value,
            description=payload.description,
            occurred_at=occurred_at,
            reference_type="manual",
            created_by=user_id,
        )
        db.add(entry)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    await db.refresh(entry)
    logger.info(f"💰 Cash {entry.entry_type} of {entry.amount:.2f} recorded (company #{company.id})")
    return entry


@cashbook_router.post("/entries", status_code=status.HTTP_201_CREATED)
async def post_cash_entry(
    payload: CashEntryCreate,
    company: Company = Depends(require_permission("cashbook", "create")),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    entry = await create_cash_entry(db, company, current_user.id, payload)
    return _cash_entry_row(entry, "paid")


def _paid_totals():
    """Subquery: revenue already received per appointment"""
    return (
        select(Transaction.appointment_id.label("appointment_id"), func.sum(Transaction.value).label("paid"))
        .where(Transaction.appointment_id.isnot(None), Transaction.type == TransactionType.REVENUE.value)
        .group_by(Transaction.appointment_id)
        .subquery()
    )


async def get_paid_total(db: AsyncSession, appointment_id: int) -> float:
    result = await db.execute(
        select(func.coalesce(func.sum(Transaction.value), 0)).where(
            Transaction.appointment_id == appointment_id,
            Transaction.type == TransactionType.REVENUE.value
        )
    )
    return float(result.scalar() or 0)


@cashbook_router.get("/pending-appointments")
async def list_pending_appointments(
    company: Company = Depends(require_permission("cashbook", "view")),
    db: AsyncSession = Depends(get_db)
):
    """Completed or past appointments not yet fully paid"""
    paid = _paid_totals()
    result = await db.execute(
        select(Appointment, Client.name, Pet.name, Service.name, Service.price, func.coalesce(paid.c.paid, 0))
        .join(Client, Client.id == Appointment.client_id)
        .join(Pet, Pet.id == Appointment.pet_id)
        .join(Service, Service.id == Appointment.service_id)
        .outerjoin(paid, paid.c.appointment_id == Appointment.id)
        .where(
            Appointment.company_id == company.id,
            Appointment.status != AppointmentStatus.CANCELLED.value,
            or_(
                Appointment.status == AppointmentStatus.COMPLETED.value,
                Appointment.scheduled_at <= datetime.utcnow()
            )
        )
        .order_by(Appointment.scheduled_at.desc())
    )

    pending = []
    for appointment, client_name, pet_name, service_name, price, paid_total in result.all():
        remaining = round((price or 0) - float(paid_total), 2)
        if remaining <= 0:
            continue
        pending.append({
            "id": appointment.id,
            "scheduled_at": appointment.scheduled_at,
            "status": appointment.status,
            "client_name": client_name,
            "pet_name": pet_name,
            "service_name": service_name,
            "service_price": price,
            "paid_total": float(paid_total),
            "remaining": remaining,
        })
    return pending


async def _lock_appointment(db: AsyncSession, company_id: int, appointment_id: int) -> Appointment:
    """
    Take the appointment's row lock for the rest of the transaction.

    The row is touched with an UPDATE first: SQLite ignores FOR UPDATE but
    serializes writers, and PostgreSQL locks the row on either statement.
    """
    touched = await db.execute(
        update(Appointment)
        .where(Appointment.id == appointment_id, Appointment.company_id == company_id)
        .values(updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    if touched.rowcount == 0:
        raise not_found("Agendamento não encontrado.")

    result = await db.execute(
        select(Appointment)
        .where(Appointment.id == appointment_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def pay_appointment(db: AsyncSession, company: Company, user_id: Optional[int],
                          appointment_id: int, payload: AppointmentPaymentRequest) -> dict:
    """
    Record a (partial) payment of an appointment's service price.

    Writes the revenue transaction and the inflow cash entry atomically.
    The amount defaults to the remaining balance and may not exceed it.
    """
    try:
        appointment = await _lock_appointment(db, company.id, appointment_id)
        if appointment.status == AppointmentStatus.CANCELLED.value:
            raise bad_request("Agendamento cancelado não pode ser pago.")

        # Balance is read under the row lock so concurrent payments see each other
        service = await db.get(Service, appointment.service_id)
        price = service.price if service else 0.0
        paid_total = await get_paid_total(db, appointment.id)
        remaining = round(price - paid_total, 2)

        if remaining <= 0:
            raise conflict("Agendamento já está quitado.")

        amount = round(payload.amount if payload.amount is not None else remaining, 2)
        if amount > remaining:
            raise bad_request(f"Valor excede o saldo restante ({format_brl(remaining)}).", field="amount")

        paid_at = payload.paid_at or datetime.utcnow()
        description = payload.description or f"Atendimento #{appointment.id} - {service.name if service else ''}".strip()

        txn = Transaction(
            company_id=company.id,
            type=TransactionType.REVENUE.value,
            date=utc_to_local(paid_at, company.timezone).date(),
            description=description,
            category=APPOINTMENT_CATEGORY,
            value=amount,
            status="paid",
            payment_method=payload.payment_method.value,
            appointment_id=appointment.id,
        )
        db.add(txn)
        await db.flush()  # Get transaction ID

        entry = CashEntry(
            company_id=company.id,
            transaction_id=txn.id,
            entry_type=EntryType.INFLOW.value,
            amount=amount,
            payment_method=payload.payment_method.value,
            description=description,
            occurred_at=paid_at,
            reference_type="appointment",
            reference_id=appointment.id,
            created_by=user_id,
        )
        db.add(entry)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    new_paid_total = round(paid_total + amount, 2)
    new_remaining = round(price - new_paid_total, 2)
    logger.info(f"💳 Appointment #{appointment.id} paid {amount:.2f} ({new_remaining:.2f} remaining)")

    return {
        "appointment_id": appointment.id,
        "transaction_id": txn.id,
        "cash_entry_id": entry.id,
        "amount": amount,
        "payment_method": entry.payment_method,
        "paid_at": paid_at,
        "service_price": price,
        "paid_total": new_paid_total,
        "remaining": max(new_remaining, 0.0),
        "payment_status": "paid" if new_remaining <= 0 else "partial",
    }


@cashbook_router.post("/appointments/{appointment_id}/pay")
async def post_appointment_payment(
    appointment_id: int,
    request: Request,
    payload: Optional[AppointmentPaymentRequest] = None,
    company: Company = Depends(require_permission("cashbook", "create")),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    result = await pay_appointment(
        db, company, current_user.id, appointment_id, payload or AppointmentPaymentRequest()
    )
    await write_audit_log(
        db, "appointment.paid",
        actor_user_id=current_user.id, company_id=company.id,
        entity_type="appointment", entity_id=appointment_id,
        metadata={"amount": result["amount"], "payment_status": result["payment_status"]},
        request=request,
    )
    return result
