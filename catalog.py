"""
Service catalog and product inventory.
"""
import logging

from fastapi import APIRouter, Depends, status
from sqlalchemy import select, update, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, require_permission
from database import get_db
from errors import bad_request, conflict, not_found
from models import Appointment, Company, Product, Service, StockMovement, StockMovementType, User
from pagination import ListParams
from schemas import (
    ProductCreate, ProductUpdate, ServiceCreate, ServiceUpdate, StockMovementCreate
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Catalog"])


def stock_status(stock: int, min_stock: int) -> str:
    """critical below half the minimum, low up to the minimum, else normal"""
    if stock < min_stock * 0.5:
        return "critical"
    if stock <= min_stock:
        return "low"
    return "normal"


# ==================== SERVICES ====================

def _service_row(service: Service) -> dict:
    return {
        "id": service.id,
        "name": service.name,
        "category": service.category,
        "duration": f"{service.duration_minutes} min",
        "duration_minutes": service.duration_minutes,
        "price": service.price,
        "commission": service.commission_pct,
    }


async def _get_service(db: AsyncSession, company_id: int, service_id: int) -> Service:
    result = await db.execute(select(Service).where(Service.id == service_id, Service.company_id == company_id))
    service = result.scalar_one_or_none()
    if not service:
        raise not_found("Serviço não encontrado.")
    return service


@router.get("/services")
async def list_services(
    params: ListParams = Depends(),
    company: Company = Depends(require_permission("services", "view")),
    db: AsyncSession = Depends(get_db)
):
    query = select(Service).where(Service.company_id == company.id)
    if params.pattern:
        query = query.where(or_(Service.name.ilike(params.pattern), Service.category.ilike(params.pattern)))

    result = await db.execute(
        query.order_by(params.sort(Service.name, default="asc")).offset(params.offset).limit(params.limit)
    )
    return [_service_row(service) for service in result.scalars().all()]


@router.post("/services", status_code=status.HTTP_201_CREATED)
async def create_service(
    service_data: ServiceCreate,
    company: Company = Depends(require_permission("services", "create")),
    db: AsyncSession = Depends(get_db)
):
    service = Service(company_id=company.id, **service_data.model_dump())
    db.add(service)
    await db.commit()
    await db.refresh(service)
    return _service_row(service)


@router.put("/services/{service_id}")
async def update_service(
    service_id: int,
    service_data: ServiceUpdate,
    company: Company = Depends(require_permission("services", "edit")),
    db: AsyncSession = Depends(get_db)
):
    service = await _get_service(db, company.id, service_id)
    for field, value in service_data.model_dump(exclude_unset=True).items():
        if value is not None:
            setattr(service, field, value)

    await db.commit()
    await db.refresh(service)
    return _service_row(service)


@router.delete("/services/{service_id}")
async def delete_service(
    service_id: int,
    company: Company = Depends(require_permission("services", "delete")),
    db: AsyncSession = Depends(get_db)
):
    """Delete a service; services still used by appointments are kept"""
    service = await _get_service(db, company.id, service_id)

    in_use = (await db.execute(
        select(func.count(Appointment.id)).where(Appointment.service_id == service.id)
    )).scalar() or 0
    if in_use:
        raise conflict("Serviço possui agendamentos vinculados e não pode ser excluído.")

    await db.delete(service)
    await db.commit()
    return {"ok": True}


# ==================== PRODUCTS ====================

def build_product_row(product: Product) -> dict:
    return {
        "id": product.id,
        "name": product.name,
        "category": product.category,
        "stock": product.stock,
        "minStock": product.min_stock,
        "price": product.price,
        "unit": product.unit,
        "status": stock_status(product.stock, product.min_stock),
    }


async def _get_product(db: AsyncSession, company_id: int, product_id: int) -> Product:
    result = await db.execute(select(Product).where(Product.id == product_id, Product.company_id == company_id))
    product = result.scalar_one_or_none()
    if not product:
        raise not_found("Produto não encontrado.")
    return product


@router.get("/products")
async def list_products(
    params: ListParams = Depends(),
    company: Company = Depends(require_permission("inventory", "view")),
    db: AsyncSession = Depends(get_db)
):
    query = select(Product).where(Product.company_id == company.id)
    if params.pattern:
        query = query.where(or_(Product.name.ilike(params.pattern), Product.category.ilike(params.pattern)))

    result = await db.execute(
        query.order_by(params.sort(Product.name, default="asc")).offset(params.offset).limit(params.limit)
    )
    return [build_product_row(product) for product in result.scalars().all()]


@router.post("/products", status_code=status.HTTP_201_CREATED)
async def create_product(
    product_data: ProductCreate,
    company: Company = Depends(require_permission("inventory", "create")),
    db: AsyncSession = Depends(get_db)
):
    product = Product(company_id=company.id, **product_data.model_dump())
    db.add(product)
    await db.commit()
    await db.refresh(product)
    return build_product_row(product)


@router.put("/products/{product_id}")
async def update_product(
    product_id: int,
    product_data: ProductUpdate,
    company: Company = Depends(require_permission("inventory", "edit")),
    db: AsyncSession = Depends(get_db)
):
    product = await _get_product(db, company.id, product_id)
    for field, value in product_data.model_dump(exclude_unset=True).items():
        if value is not None:
            setattr(product, field, value)

    await db.commit()
    await db.refresh(product)
    return build_product_row(product)


@router.delete("/products/{product_id}")
async def delete_product(
    product_id: int,
    company: Company = Depends(require_permission("inventory", "delete")),
    db: AsyncSession = Depends(get_db)
):
    product = await _get_product(db, company.id, product_id)
    await db.delete(product)
    await db.commit()
    return {"ok": True}


@router.post("/products/{product_id}/stock")
async def create_stock_movement(
    product_id: int,
    movement_data: StockMovementCreate,
    company: Company = Depends(require_permission("inventory", "edit")),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """
    Record a stock movement.

    - in: adds quantity
    - out: removes quantity (400 when stock would go negative)
    - adjustment: sets stock to quantity
    """
    product = await _get_product(db, company.id, product_id)
    movement_type = movement_data.movement_type
    quantity = movement_data.quantity
    previous_stock = product.stock

    # Applied in SQL so concurrent movements never read a stale stock
    stmt = update(Product).where(Product.id == product.id)
    if movement_type == StockMovementType.IN:
        stmt = stmt.values(stock=Product.stock + quantity)
    elif movement_type == StockMovementType.OUT:
        stmt = stmt.where(Product.stock >= quantity).values(stock=Product.stock - quantity)
    else:
        stmt = stmt.values(stock=quantity)

    try:
        result = await db.execute(stmt.execution_options(synchronize_session=False))
        if result.rowcount == 0:
            raise bad_request("Estoque insuficiente.", field="quantity")

        db.add(StockMovement(
            company_id=company.id,
            product_id=product.id,
            user_id=current_user.id,
            movement_type=movement_type.value,
            quantity=quantity,
            notes=movement_data.notes,
        ))
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    await db.refresh(product)

    logger.info(
        f"📦 Stock {movement_type.value} for product #{product.id}: {previous_stock} -> {product.stock}"
    )
    return build_product_row(product)
