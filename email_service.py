"""
Email service for reminder and onboarding emails.
Uses Postmark HTTP API for email delivery.
"""

import httpx
import logging
from datetime import datetime
from html import escape
from config import settings

logger = logging.getLogger(__name__)


def generate_reminder_html(
    client_name: str,
    pet_name: str,
    service_name: str,
    business_name: str,
    when: datetime
) -> str:
    """Generate HTML email for an upcoming appointment"""

    # Escape user-provided content to prevent HTML injection
    client_name = escape(client_name)
    pet_name = escape(pet_name)
    service_name = escape(service_name)
    business_name = escape(business_name)
    when_text = when.strftime("%d/%m/%Y às %H:%M")

    return f"""<!DOCTYPE html>
<html>
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
</head>
<body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333; margin: 0; padding: 0;">
    <div style="max-width: 600px; margin: 0 auto; padding: 20px;">
        <div style="background: #0EA5E9; color: white; padding: 30px; text-align: center; border-radius: 8px 8px 0 0;">
            <h1 style="margin: 0; font-size: 24px;">{business_name}</h1>
            <p style="margin: 8px 0 0 0; font-size: 14px; opacity: 0.9;">Lembrete de agendamento</p>
        </div>
        <div style="padding: 30px; background: #f9fafb; border-radius: 0 0 8px 8px;">
            <p style="font-size: 16px;">Olá <strong>{client_name}</strong>,</p>
            <p style="font-size: 16px;">Lembramos que <strong>{pet_name}</strong> tem um horário marcado:</p>
            <div style="background: #fff; border: 1px solid #e5e7eb; padding: 16px; border-radius: 8px; margin: 20px 0;">
                <table style="width: 100%; border-collapse: collapse;">
                    <tr>
                        <td style="padding: 8px 0; color: #6b7280;">Serviço:</td>
                        <td style="padding: 8px 0; color: #111827; font-weight: bold; text-align: right;">{service_name}</td>
                    </tr>
                    <tr>
                        <td style="padding: 8px 0; color: #6b7280;">Data:</td>
                        <td style="padding: 8px 0; color: #111827; text-align: right;">{when_text}</td>
                    </tr>
                </table>
            </div>
            <p style="font-size: 14px; color: #6b7280;">Se precisar remarcar, entre em contato com {business_name}.</p>
        </div>
    </div>
</body>
</html>"""


def generate_reminder_plain(
    client_name: str,
    pet_name: str,
    service_name: str,
    business_name: str,
    when: datetime
) -> str:
    """Generate plain text email for an upcoming appointment (fallback)"""

    return f"""{business_name} - Lembrete de agendamento

Olá {client_name},

Lembramos que {pet_name} tem um horário marcado:

- Serviço: {service_name}
- Data: {when.strftime("%d/%m/%Y às %H:%M")}

Se precisar remarcar, entre em contato com {business_name}.
"""


def generate_welcome_plain(full_name: str, company_name: str, trial_days: int) -> str:
    return f"""Bem-vindo ao PetPro!

Olá {full_name},

A conta de {company_name} foi criada com sucesso.
Você tem {trial_days} dias de teste gratuito para explorar todos os recursos.

Equipe PetPro
"""


class EmailService:
    """Async email service using Postmark HTTP API"""

    POSTMARK_API_URL = "https://api.postmarkapp.com/email"

    def __init__(self):
        self.server_token = settings.POSTMARK_SERVER_TOKEN
        self.from_email = settings.POSTMARK_FROM_EMAIL
        self.from_name = settings.POSTMARK_FROM_NAME
        self.enabled = settings.POSTMARK_ENABLED
        self.test_mode = settings.EMAIL_TEST_MODE

    async def send_email(
        self,
        to_email: str,
        subject: str,
        html_content: str,
        plain_content: str
    ) -> bool:
        """
        Send email via Postmark HTTP API.

        Args:
            to_email: Recipient email address
            subject: Email subject line
            html_content: HTML version of email
            plain_content: Plain text fallback

        Returns:
            True if email sent successfully, False otherwise
        """

        # Test mode - log email instead of sending
        if self.test_mode:
            logger.info(f"[TEST MODE] Email would be sent to: {to_email} | Subject: {subject}")
            return True

        if not self.enabled:
            logger.warning(f"Postmark disabled - email not sent to {to_email}")
            return False

        if not self.server_token:
            logger.error(f"POSTMARK_SERVER_TOKEN not configured - email not sent to {to_email}")
            return False

        try:
            headers = {
                "Accept": "application/json",
                "Content-Type": "application/json",
                "X-Postmark-Server-Token": self.server_token
            }

            payload = {
                "From": f"{self.from_name} <{self.from_email}>",
                "To": to_email,
                "Subject": subject,
                "HtmlBody": html_content,
                "TextBody": plain_content,
                "MessageStream": "outbound"
            }

            async with httpx.AsyncClient() as client:
                response = await client.post(
                    self.POSTMARK_API_URL,
                    headers=headers,
                    json=payload,
                    timeout=30.0
                )

            if response.status_code == 200:
                logger.info(f"Email sent successfully to {to_email}")
                return True

            logger.error(f"Postmark API error for {to_email}: {response.status_code} - {response.text}")
            return False

        except httpx.TimeoutException:
            logger.error(f"Timeout sending email to {to_email}")
            return False

        except httpx.HTTPError as e:
            logger.error(f"Failed to send email to {to_email}: {str(e)}")
            return False

    async def send_appointment_reminder_email(
        self,
        client_email: str,
        client_name: str,
        pet_name: str,
        service_name: str,
        business_name: str,
        when: datetime
    ) -> bool:
        """
        Send the upcoming-appointment reminder to a pet owner.

        Args:
            when: Appointment time, already in the company's local timezone

        Returns:
            True if email sent successfully
        """
        html_content = generate_reminder_html(client_name, pet_name, service_name, business_name, when)
        plain_content = generate_reminder_plain(client_name, pet_name, service_name, business_name, when)

        return await self.send_email(
            to_email=client_email,
            subject=f"Lembrete: {pet_name} tem horário em {business_name}",
            html_content=html_content,
            plain_content=plain_content
        )

    async def send_welcome_email(
        self,
        user_email: str,
        user_full_name: str,
        company_name: str,
        trial_days: int
    ) -> bool:
        plain_content = generate_welcome_plain(user_full_name, company_name, trial_days)
        html_content = "<br>".join(escape(line) for line in plain_content.splitlines())

        return await self.send_email(
            to_email=user_email,
            subject="Bem-vindo ao PetPro",
            html_content=html_content,
            plain_content=plain_content
        )


# Singleton instance
email_service = EmailService()
