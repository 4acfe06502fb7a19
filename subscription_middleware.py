"""
Subscription Middleware
Enforces read-only access for companies without an active subscription
"""

from fastapi import Depends
from datetime import datetime
import logging

from errors import ApiError
from models import Company, CompanyStatus
from auth import get_current_company

logger = logging.getLogger(__name__)

BLOCKED_STATUSES = {
    CompanyStatus.SUSPENDED.value,
    CompanyStatus.CANCELLED.value,
    CompanyStatus.PAST_DUE.value,
}


def subscription_block_reason(company: Company, now: datetime = None) -> str:
    """Return the reason writes are blocked for this company, or '' when allowed"""
    now = now or datetime.utcnow()

    if company.status in BLOCKED_STATUSES:
        if company.status == CompanyStatus.PAST_DUE.value:
            return "Assinatura pendente de pagamento. Regularize para continuar."
        return "Sua conta está bloqueada. Entre em contato com o suporte."

    if company.status == CompanyStatus.TRIAL.value:
        if company.trial_ends_at and company.trial_ends_at <= now:
            return "Seu período de teste terminou. Escolha um plano para continuar."

    return ""


def ensure_subscription_active(company: Company):
    """
    Block write operations for companies that are suspended, cancelled,
    past due or whose trial has ended. Reads stay available.

    Raises:
        ApiError 403: If the company cannot write
    """
    reason = subscription_block_reason(company)
    if reason:
        logger.warning(f"Write operation blocked for company {company.id} (status={company.status})")
        raise ApiError(403, reason)


async def check_company_subscription_active(
    company: Company = Depends(get_current_company)
) -> Company:
    """
    Dependency variant for write endpoints that are not behind a
    permission check (settings, attachments, profile uploads).

    Returns:
        Company: The current company if it may write
    """
    ensure_subscription_active(company)
    return company
