"""
File attachments for clinical and financial records.
Files arrive as base64 data URLs and are stored under UPLOAD_DIR.
"""
import logging

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_company, get_current_user
from config import settings
from database import get_db
from errors import bad_request, not_found
from file_utils import ALLOWED_ATTACHMENT_MIME_TYPES, decode_data_url, delete_upload, save_upload
from models import (
    Appointment, Attachment, AttachmentEntity, Client, Company, MedicalRecord, Pet, Transaction, User
)
from schemas import AttachmentCreate
from subscription_middleware import check_company_subscription_active

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/attachments", tags=["Attachments"])

ENTITY_MODELS = {
    AttachmentEntity.MEDICAL_RECORD: MedicalRecord,
    AttachmentEntity.APPOINTMENT: Appointment,
    AttachmentEntity.TRANSACTION: Transaction,
    AttachmentEntity.CLIENT: Client,
    AttachmentEntity.PET: Pet,
}


def _attachment_row(attachment: Attachment) -> dict:
    return {
        "id": attachment.id,
        "entity_type": attachment.entity_type,
        "entity_id": attachment.entity_id,
        "file_name": attachment.file_name,
        "file_url": attachment.file_url,
        "mime_type": attachment.mime_type,
        "size_bytes": attachment.size_bytes,
        "created_at": attachment.created_at,
    }


async def ensure_entity_exists(db: AsyncSession, company_id: int, entity_type: AttachmentEntity, entity_id: int):
    model = ENTITY_MODELS[entity_type]
    result = await db.execute(select(model.id).where(model.id == entity_id, model.company_id == company_id))
    if result.scalar_one_or_none() is None:
        raise not_found("Registro não encontrado para anexar o arquivo.")


@router.get("")
async def list_attachments(
    entity_type: AttachmentEntity = Query(...),
    entity_id: int = Query(...),
    company: Company = Depends(get_current_company),
    db: AsyncSession = Depends(get_db)
):
    result = await db.execute(
        select(Attachment)
        .where(
            Attachment.company_id == company.id,
            Attachment.entity_type == entity_type.value,
            Attachment.entity_id == entity_id
        )
        .order_by(Attachment.created_at.desc(), Attachment.id.desc())
    )
    return [_attachment_row(a) for a in result.scalars().all()]


@router.post("", status_code=status.HTTP_201_CREATED)
async def upload_attachment(
    payload: AttachmentCreate,
    company: Company = Depends(check_company_subscription_active),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    await ensure_entity_exists(db, company.id, payload.entity_type, payload.entity_id)

    mime_type, content = decode_data_url(payload.data_url, settings.ATTACHMENT_MAX_BYTES)
    if mime_type not in ALLOWED_ATTACHMENT_MIME_TYPES:
        raise bad_request("Tipo de arquivo não suportado.", field="data_url")

    file_url = save_upload(
        content,
        f"attachments/{company.id}",
        payload.file_name,
        mime_type,
    )
    attachment = Attachment(
        company_id=company.id,
        entity_type=payload.entity_type.value,
        entity_id=payload.entity_id,
        file_name=payload.file_name,
        file_url=file_url,
        mime_type=mime_type,
        size_bytes=len(content),
        uploaded_by=current_user.id,
    )
    db.add(attachment)
    await db.commit()
    await db.refresh(attachment)

    logger.info(f"📎 Attachment #{attachment.id} ({len(content)} bytes) on {attachment.entity_type}:{attachment.entity_id}")
    return _attachment_row(attachment)


@router.delete("/{attachment_id}")
async def delete_attachment(
    attachment_id: int,
    company: Company = Depends(check_company_subscription_active),
    db: AsyncSession = Depends(get_db)
):
    result = await db.execute(
        select(Attachment).where(Attachment.id == attachment_id, Attachment.company_id == company.id)
    )
    attachment = result.scalar_one_or_none()
    if not attachment:
        raise not_found("Anexo não encontrado.")

    file_url = attachment.file_url
    await db.delete(attachment)
    await db.commit()
    delete_upload(file_url)
    return {"ok": True}
