"""
Dashboard statistics and CSV report exports.
"""
import csv
import io
import logging
from typing import Iterable, Sequence

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from appointments import build_appointment_row
from auth import require_permission
from catalog import build_product_row, stock_status
from database import get_db
from errors import bad_request
from finance import format_brl, month_totals
from models import (
    Appointment, AppointmentStatus, Client, Company, Pet, Product, Service, Transaction, User
)
from plan_access import require_module
from tenants import company_roles, pick_role
from timezone_utils import get_company_day_range, get_company_today

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Reports"])

REPORT_FILENAMES = {
    "clients": "clientes.csv",
    "financial": "financeiro.csv",
    "inventory": "estoque.csv",
    "services": "servicos.csv",
    "users": "usuarios.csv",
}


def to_csv(headers: Sequence[str], rows: Iterable[Sequence]) -> str:
    """
    Render rows as CSV. Values containing a quote, comma or line break are
    quoted with inner quotes doubled; None becomes an empty cell.
    """
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_MINIMAL, lineterminator="\n")
    writer.writerow(headers)
    for row in rows:
        writer.writerow(["" if value is None else value for value in row])
    return buffer.getvalue()


def csv_response(content: str, filename: str) -> Response:
    return Response(
        content=content,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# ==================== DASHBOARD ====================

@router.get("/dashboard-stats")
async def get_dashboard_stats(
    company: Company = Depends(require_permission("dashboard", "view")),
    db: AsyncSession = Depends(get_db)
):
    """Today's agenda, client count, month revenue and low stock"""
    day_start, day_end = get_company_day_range(get_company_today(company.timezone), company.timezone)
    today_filter = (
        Appointment.company_id == company.id,
        Appointment.scheduled_at >= day_start,
        Appointment.scheduled_at < day_end,
        Appointment.status != AppointmentStatus.CANCELLED.value,
    )

    appointments_today = (await db.execute(
        select(func.count(Appointment.id)).where(*today_filter)
    )).scalar() or 0
    client_count = (await db.execute(
        select(func.count(Client.id)).where(Client.company_id == company.id)
    )).scalar() or 0
    low_stock_filter = (Product.company_id == company.id, Product.stock <= Product.min_stock)
    low_stock_count = (await db.execute(
        select(func.count(Product.id)).where(*low_stock_filter)
    )).scalar() or 0
    totals = await month_totals(db, company)

    upcoming = await db.execute(
        select(Appointment, Client, Pet, Service)
        .join(Client, Client.id == Appointment.client_id)
        .join(Pet, Pet.id == Appointment.pet_id)
        .join(Service, Service.id == Appointment.service_id)
        .where(*today_filter)
        .order_by(Appointment.scheduled_at.asc())
        .limit(8)
    )
    low_stock = await db.execute(
        select(Product).where(*low_stock_filter).order_by(Product.stock.asc(), Product.name.asc()).limit(5)
    )

    return {
        "stats": {
            "appointmentsToday": appointments_today,
            "clients": client_count,
            "monthlyRevenue": format_brl(totals["revenue"]),
            "lowStock": low_stock_count,
        },
        "upcomingAppointments": [build_appointment_row(*row, company.timezone) for row in upcoming.all()],
        "lowStockItems": [build_product_row(product) for product in low_stock.scalars().all()],
    }


# ==================== CSV EXPORT ====================

async def _clients_report(db: AsyncSession, company_id: int):
    pet_counts = (
        select(Pet.client_id, func.count(Pet.id).label("pets")).group_by(Pet.client_id).subquery()
    )
    result = await db.execute(
        select(Client, func.coalesce(pet_counts.c.pets, 0))
        .outerjoin(pet_counts, pet_counts.c.client_id == Client.id)
        .where(Client.company_id == company_id)
        .order_by(Client.name.asc())
    )
    return (
        ["Nome", "E-mail", "Telefone", "Endereço", "Pets"],
        [[c.name, c.email, c.phone, c.address, pets] for c, pets in result.all()],
    )


async def _financial_report(db: AsyncSession, company_id: int):
    result = await db.execute(
        select(Transaction).where(Transaction.company_id == company_id).order_by(Transaction.date.desc())
    )
    return (
        ["Data", "Tipo", "Descrição", "Categoria", "Valor", "Status"],
        [
            [t.date.isoformat(), "Receita" if t.type == "revenue" else "Despesa",
             t.description, t.category, f"{t.value:.2f}", t.status]
            for t in result.scalars().all()
        ],
    )


async def _inventory_report(db: AsyncSession, company_id: int):
    result = await db.execute(
        select(Product).where(Product.company_id == company_id).order_by(Product.name.asc())
    )
    return (
        ["Produto", "Categoria", "Estoque", "Estoque mínimo", "Unidade", "Preço", "Situação"],
        [
            [p.name, p.category, p.stock, p.min_stock, p.unit, f"{p.price:.2f}", stock_status(p.stock, p.min_stock)]
            for p in result.scalars().all()
        ],
    )


async def _services_report(db: AsyncSession, company_id: int):
    result = await db.execute(
        select(Service).where(Service.company_id == company_id).order_by(Service.name.asc())
    )
    return (
        ["Serviço", "Categoria", "Duração (min)", "Preço", "Comissão (%)"],
        [
            [s.name, s.category, s.duration_minutes, f"{s.price:.2f}", f"{s.commission_pct:g}"]
            for s in result.scalars().all()
        ],
    )


async def _users_report(db: AsyncSession, company_id: int):
    users = (await db.execute(
        select(User).where(User.company_id == company_id).order_by(User.full_name.asc())
    )).scalars().all()
    roles = await company_roles(db, company_id)
    return (
        ["Nome", "E-mail", "Papel"],
        [[u.full_name, u.email, pick_role(roles.get(u.id, set()))] for u in users],
    )


REPORT_BUILDERS = {
    "clients": _clients_report,
    "financial": _financial_report,
    "inventory": _inventory_report,
    "services": _services_report,
    "users": _users_report,
}


@router.get("/reports/export", dependencies=[Depends(require_module("reports", "Relatórios"))])
async def export_report(
    report_type: str = Query("", alias="type"),
    company: Company = Depends(require_permission("reports", "view")),
    db: AsyncSession = Depends(get_db)
):
    """Download a CSV report (?type=clients|financial|inventory|services|users)"""
    builder = REPORT_BUILDERS.get(report_type)
    if builder is None:
        raise bad_request("Tipo de relatório inválido.", field="type")

    headers, rows = await builder(db, company.id)
    logger.info(f"📄 Exported {report_type} report ({len(rows)} rows) for company #{company.id}")
    return csv_response(to_csv(headers, rows), REPORT_FILENAMES[report_type])
