"""
Notification Service

Sends the deletion-warning e-mail to graduated members whose grace period is
about to end. Templates are rendered with Jinja2 and delivered over SMTP.
"""

import asyncio
import logging
import smtplib
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from pathlib import Path
from typing import Protocol

from jinja2 import Environment, FileSystemLoader, select_autoescape
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from campus.config import settings
from campus.exceptions import MemberNotFoundError, NotificationError
from campus.models.member import Member
from campus.models.tenant import Tenant

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).parent.parent / "templates" / "emails"


class DeletionNotifier(Protocol):
    async def send_deletion_warning(self, member_id: int, deletion_date: datetime) -> None: ...


class EmailService:
    """Service for sending emails with template support"""

    def __init__(self, template_dir: Path = TEMPLATE_DIR):
        self.env = Environment(
            loader=FileSystemLoader(str(template_dir)),
            autoescape=select_autoescape(["html", "xml"]),
        )
        self.smtp_host = settings.smtp_host
        self.smtp_port = settings.smtp_port
        self.smtp_user = settings.smtp_user
        self.smtp_password = settings.smtp_password
        self.smtp_from = settings.smtp_from

    def _send_email(self, to_email: str, subject: str, html_body: str, text_body: str | None = None) -> bool:
        """
        Send an email using SMTP.

        Returns:
            bool: True if email sent successfully, False otherwise
        """
        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = self.smtp_from
            msg["To"] = to_email

            if text_body:
                msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

            with smtplib.SMTP(self.smtp_host, self.smtp_port) as server:
                server.starttls()
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.send_message(msg)

            return True

        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send email to {to_email}: {e}")
            return False

    def render_deletion_warning(self, username: str, deletion_date: datetime, tenant_name: str | None = None) -> tuple[str, str]:
        """Return (html, text) bodies of the deletion warning."""
        formatted_date = deletion_date.strftime("%B %d, %Y")
        template = self.env.get_template("deletion_warning.html")
        html_body = template.render(
            username=username,
            tenant_name=tenant_name,
            deletion_date=formatted_date,
            app_name=settings.app_name,
        )
        text_body = f"""
            Hello {username},

            Your {settings.app_name} student account is in its post-graduation grace period
            and will be permanently deleted on {formatted_date}.

            Please download anything you want to keep before then.

            Best regards,
            The {settings.app_name} Team
            """
        return html_body, text_body

    async def send_deletion_warning_email(
        self,
        to_email: str,
        username: str,
        deletion_date: datetime,
        tenant_name: str | None = None,
    ) -> bool:
        html_body, text_body = self.render_deletion_warning(username, deletion_date, tenant_name)
        return await asyncio.to_thread(
            self._send_email,
            to_email,
            f"Your account will be deleted soon - {settings.app_name}",
            html_body,
            text_body,
        )


class EmailDeletionNotifier:
    """DeletionNotifier that looks the member up and e-mails them."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], email_service: EmailService | None = None):
        self.session_factory = session_factory
        self.email_service = email_service or EmailService()

    async def send_deletion_warning(self, member_id: int, deletion_date: datetime) -> None:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Member, Tenant.name).outerjoin(Tenant, Tenant.id == Member.tenant_id).where(Member.id == member_id)
            )
            row = result.first()

        if row is None:
            raise MemberNotFoundError(member_id)
        member, tenant_name = row
        if not member.email:
            raise NotificationError(f"Member {member_id} has no e-mail address", member_id=member_id)

        sent = await self.email_service.send_deletion_warning_email(
            member.email, member.username, deletion_date, tenant_name
        )
        if not sent:
            raise NotificationError(f"Deletion warning to member {member_id} was not delivered", member_id=member_id)
        logger.info("Deletion warning sent to member %d (deletion on %s)", member_id, deletion_date.date())
