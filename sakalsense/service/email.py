from __future__ import annotations

import html
import json
import math
import re
import secrets
import smtplib
import ssl
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from email.errors import MessageError
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from sakalsense.logging import get_logger
from sakalsense.storage.models import utcnow
from sakalsense.storage.redis_cache import CacheStore

logger = get_logger(__name__)

MAIL_LOG_PREFIX = "maillog"
MAIL_LOG_TTL_SECONDS = 7 * 24 * 60 * 60
MAIL_LOG_INDEX_KEY = "maillog:index"
MAIL_LOG_INDEX_SIZE = 1000
MAIL_STATS_PREFIX = "mailstats"
SMTP_TIMEOUT_SECONDS = 30

_EMAIL_PATTERN = re.compile(
    r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+@[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)*$"
)


def validate_email_address(email: Optional[str]) -> bool:
    if not email or not isinstance(email, str) or len(email) > 254:
        return False
    return bool(_EMAIL_PATTERN.match(email))


def sanitize_email_address(email: Optional[str]) -> str:
    """Trim, lower-case and strip CR/LF so the address is safe in a header."""
    if not email or not isinstance(email, str):
        return ""
    return email.strip().lower().replace("\r", "").replace("\n", "")


def sanitize_header_value(value: Optional[str]) -> str:
    """Collapse CR/LF so a free-text value cannot start a new header."""
    if not value:
        return ""
    return " ".join(value.splitlines()).strip()


def redact_email(email: str) -> str:
    """Redact an email address for logging to avoid PII leakage."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class EmailType(str, Enum):
    VERIFICATION = "VERIFICATION"
    PASSWORD_RESET = "PASSWORD_RESET"
    OTP = "OTP"
    NOTIFICATION = "NOTIFICATION"
    TEST = "TEST"


class MailStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"


@dataclass
class OutboundEmail:
    to: str
    subject: str
    html_body: str
    text_body: str
    email_type: EmailType = EmailType.NOTIFICATION
    cc: List[str] = field(default_factory=list)
    bcc: List[str] = field(default_factory=list)
    reply_to: Optional[str] = None


@dataclass
class EmailResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


# -- templates ---------------------------------------------------------------

_LAYOUT = """<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>{title}</title>
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #333; margin: 0; padding: 0; background-color: #f5f5f5; }}
        .container {{ max-width: 600px; margin: 0 auto; background-color: #ffffff; }}
        .header {{ background: #667eea; padding: 30px; text-align: center; }}
        .header h1 {{ color: #ffffff; margin: 0; font-size: 24px; font-weight: 600; }}
        .content {{ padding: 40px 30px; }}
        .footer {{ background-color: #f8f9fa; padding: 20px 30px; text-align: center; font-size: 12px; color: #666; }}
        .button {{ display: inline-block; background: #667eea; color: #ffffff; padding: 14px 32px; text-decoration: none; border-radius: 8px; font-weight: 600; margin: 20px 0; }}
        .otp-box {{ background-color: #f8f9fa; border: 2px dashed #667eea; padding: 20px; text-align: center; margin: 20px 0; border-radius: 8px; }}
        .otp-code {{ font-size: 32px; font-weight: bold; color: #667eea; letter-spacing: 8px; margin: 0; }}
        .text-muted {{ color: #666; font-size: 14px; }}
    </style>
</head>
<body>
    <div class="container">
        <div class="header"><h1>{brand}</h1></div>
        <div class="content">
{content}
        </div>
        <div class="footer">
            <p>&copy; {year} {brand}. All rights reserved.</p>
            <p class="text-muted">This is an automated email. Please do not reply.</p>
        </div>
    </div>
</body>
</html>
"""


def _layout(content: str, title: str, brand: str) -> str:
    return _LAYOUT.format(
        title=html.escape(title),
        brand=html.escape(brand),
        content=content,
        year=datetime.now(timezone.utc).year,
    )


def _greeting(recipient_name: Optional[str]) -> str:
    return f"Hello {recipient_name}," if recipient_name else "Hello,"


def _paragraphs(message: str) -> str:
    return html.escape(message).replace("\n", "<br>")


def otp_template(
    recipient_name: Optional[str], otp: str, expires_in: str = "10 minutes", *, brand: str = "SakalSense"
) -> Tuple[str, str]:
    greeting = _greeting(recipient_name)
    body = f"""            <p>{html.escape(greeting)}</p>
            <p>Your verification code is:</p>
            <div class="otp-box"><p class="otp-code">{html.escape(otp)}</p></div>
            <p class="text-muted">This code will expire in <strong>{expires_in}</strong>.</p>
            <p>If you didn't request this code, please ignore this email.</p>"""
    text = (
        f"{greeting}\n\nYour verification code is: {otp}\n\n"
        f"This code will expire in {expires_in}.\n\n"
        f"If you didn't request this code, please ignore this email.\n\n{brand}"
    )
    return _layout(body, "Verification Code", brand), text


def password_reset_template(
    recipient_name: Optional[str], reset_link: str, expires_in: str = "1 hour", *, brand: str = "SakalSense"
) -> Tuple[str, str]:
    greeting = _greeting(recipient_name)
    link = html.escape(reset_link, quote=True)
    body = f"""            <p>{html.escape(greeting)}</p>
            <p>We received a request to reset your password. Click the button below to create a new password:</p>
            <p style="text-align: center;"><a href="{link}" class="button">Reset Password</a></p>
            <p class="text-muted">This link will expire in <strong>{expires_in}</strong>.</p>
            <p class="text-muted">If you didn't request this, you can safely ignore this email.</p>
            <p class="text-muted" style="font-size: 12px;">If the button doesn't work, copy and paste this link: {link}</p>"""
    text = (
        f"{greeting}\n\nWe received a request to reset your password.\n\n"
        f"Click here to reset: {reset_link}\n\nThis link will expire in {expires_in}.\n\n"
        f"If you didn't request this, you can safely ignore this email.\n\n{brand}"
    )
    return _layout(body, "Reset Your Password", brand), text


def notification_template(
    recipient_name: Optional[str], subject: str, message: str, *, brand: str = "SakalSense"
) -> Tuple[str, str]:
    greeting = _greeting(recipient_name)
    body = f"""            <p>{html.escape(greeting)}</p>
            <p>{_paragraphs(message)}</p>"""
    text = f"{greeting}\n\n{message}\n\n{brand}"
    return _layout(body, subject, brand), text


def trial_mail_template(subject: str, message: str, *, brand: str = "SakalSense") -> Tuple[str, str]:
    footer = "This is a test email sent from the administrator panel."
    body = f"""            <p>{_paragraphs(message)}</p>
            <p class="text-muted" style="margin-top: 24px;">{footer}</p>"""
    text = f"{message}\n\n{footer}\n\n{brand}"
    return _layout(body, subject, brand), text


# -- transport ---------------------------------------------------------------


class EmailService:
    """SMTP transport for transactional email.

    Without an SMTP host (dev mode) messages are logged with the recipient
    redacted and reported as sent. ``send`` never raises; failures come back
    as an unsuccessful ``EmailResult`` so the caller decides about retries.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "SakalSense",
        reply_to: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = SMTP_TIMEOUT_SECONDS,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.reply_to = reply_to
        self.base_url = (base_url or "http://localhost:3000").rstrip("/")
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def build_message(self, email: OutboundEmail) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = sanitize_header_value(email.subject)
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = sanitize_email_address(email.to)
        if email.cc:
            msg["Cc"] = ", ".join(sanitize_email_address(addr) for addr in email.cc)
        reply_to = email.reply_to or self.reply_to
        if reply_to:
            msg["Reply-To"] = sanitize_email_address(reply_to)
        domain = (self.from_email or "localhost").split("@")[-1]
        msg["Message-ID"] = make_msgid(domain=domain)
        msg.attach(MIMEText(email.text_body, "plain"))
        msg.attach(MIMEText(email.html_body, "html"))
        return msg

    def send(self, email: OutboundEmail) -> EmailResult:
        to_email = sanitize_email_address(email.to)
        if not validate_email_address(to_email):
            logger.warning("email_invalid_recipient", to=redact_email(to_email))
            return EmailResult(success=False, error="Invalid recipient email address")

        if not self.is_configured:
            # Dev mode: log the email instead of sending
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
                subject=email.subject,
                email_type=email.email_type.value,
            )
            return EmailResult(success=True, message_id=f"dev-{secrets.token_hex(8)}")

        recipients = [to_email, *map(sanitize_email_address, email.cc), *map(sanitize_email_address, email.bcc)]
        try:
            msg = self.build_message(email)
            payload = msg.as_string()
            context = ssl.create_default_context()
            logger.debug(
                "email_connecting",
                host=self.smtp_host,
                port=self.smtp_port,
                use_tls=self.smtp_use_tls,
                to=redact_email(to_email),
            )
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, recipients, payload)
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, recipients, payload)
        except MessageError as e:
            logger.error("email_build_failed", to=redact_email(to_email), error=str(e))
            return EmailResult(success=False, error="Message could not be built")
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            return EmailResult(success=False, error="SMTP authentication failed")
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=redact_email(to_email), error=str(e))
            return EmailResult(success=False, error="Recipient refused")
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return EmailResult(success=False, error=str(e))
        except ssl.SSLError as e:
            logger.error("email_ssl_error", to=redact_email(to_email), host=self.smtp_host, error=str(e))
            return EmailResult(success=False, error=str(e))
        except OSError as e:
            # connection refused, DNS failures and socket timeouts
            logger.error(
                "email_connect_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return EmailResult(success=False, error=str(e))

        logger.info("email_sent", to=redact_email(to_email), subject=email.subject)
        return EmailResult(success=True, message_id=msg["Message-ID"])

    # -- composed messages

    def password_reset_email(self, to_email: str, recipient_name: Optional[str], token: str) -> OutboundEmail:
        reset_url = f"{self.base_url}/reset-password?token={token}"
        html_body, text_body = password_reset_template(recipient_name, reset_url, brand=self.from_name)
        return OutboundEmail(
            to=to_email,
            subject="Reset Your Password",
            html_body=html_body,
            text_body=text_body,
            email_type=EmailType.PASSWORD_RESET,
        )

    def otp_email(self, to_email: str, recipient_name: Optional[str], otp: str) -> OutboundEmail:
        html_body, text_body = otp_template(recipient_name, otp, brand=self.from_name)
        return OutboundEmail(
            to=to_email,
            subject="Your Verification Code",
            html_body=html_body,
            text_body=text_body,
            email_type=EmailType.OTP,
        )

    def notification_email(
        self, to_email: str, recipient_name: Optional[str], subject: str, message: str
    ) -> OutboundEmail:
        html_body, text_body = notification_template(recipient_name, subject, message, brand=self.from_name)
        return OutboundEmail(
            to=to_email,
            subject=subject,
            html_body=html_body,
            text_body=text_body,
            email_type=EmailType.NOTIFICATION,
        )

    def admin_approved_email(self, to_email: str, full_name: str, temporary_password: str) -> OutboundEmail:
        message = (
            "Congratulations! Your admin access request has been approved.\n\n"
            "Your login credentials:\n"
            f"Email: {to_email}\n"
            f"Temporary Password: {temporary_password}\n\n"
            f"Please login at: {self.base_url}/login/admin\n\n"
            "IMPORTANT: Please change your password immediately after logging in."
        )
        return self.notification_email(to_email, full_name, "Your Admin Access Has Been Approved", message)

    def admin_rejected_email(self, to_email: str, full_name: str, reason: Optional[str]) -> OutboundEmail:
        message = "We regret to inform you that your admin access request has not been approved at this time."
        if reason:
            message += f"\n\nReason: {reason}"
        message += "\n\nIf you believe this was a mistake, please contact support."
        return self.notification_email(to_email, full_name, "Admin Access Request Update", message)

    def test_email(self, to_email: str, subject: str, message: str) -> OutboundEmail:
        html_body, text_body = trial_mail_template(subject, message, brand=self.from_name)
        return OutboundEmail(
            to=to_email,
            subject=subject,
            html_body=html_body,
            text_body=text_body,
            email_type=EmailType.TEST,
        )


# -- delivery log ------------------------------------------------------------


class MailLog:
    """Delivery outcomes in the cache store, kept 7 days.

    Each outcome is its own key. ``recent`` reads a capped newest-first index
    of those keys and ``stats`` sums one counter per status per UTC day, so
    neither walks the keyspace.
    """

    def __init__(
        self,
        cache: CacheStore,
        *,
        ttl_seconds: int = MAIL_LOG_TTL_SECONDS,
        index_size: int = MAIL_LOG_INDEX_SIZE,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self.index_size = index_size
        self._clock = clock

    @staticmethod
    def _new_id() -> str:
        # time-sortable, no colons so it stays one key segment
        return f"{int(time.time() * 1000)}_{secrets.token_hex(2)}"

    @staticmethod
    def _counter_key(day: date, status: MailStatus) -> str:
        return f"{MAIL_STATS_PREFIX}:{day.isoformat()}:{status.value}"

    def _window_days(self) -> List[date]:
        today = self._clock().date()
        days = max(1, math.ceil(self.ttl_seconds / 86400))
        return [today - timedelta(days=offset) for offset in range(days)]

    async def record(
        self,
        email: OutboundEmail,
        status: MailStatus,
        *,
        duration_ms: int,
        message_id: Optional[str] = None,
        error_message: Optional[str] = None,
        retry_count: int = 0,
    ) -> Dict[str, Any]:
        now = self._clock()
        entry_id = self._new_id()
        entry: Dict[str, Any] = {
            "id": entry_id,
            "timestamp": now.isoformat(),
            "recipient": sanitize_email_address(email.to),
            "subject": email.subject,
            "type": email.email_type.value,
            "status": status.value,
            "duration_ms": duration_ms,
            "message_id": message_id,
            "error_message": error_message,
            "retry_count": retry_count,
        }
        key = f"{MAIL_LOG_PREFIX}:{status.value}:{entry_id}"
        await self.cache.set(key, json.dumps(entry, separators=(",", ":")), ttl_seconds=self.ttl_seconds)
        await self.cache.list_push(
            MAIL_LOG_INDEX_KEY, key, max_length=self.index_size, ttl_seconds=self.ttl_seconds
        )
        # a day bucket outlives the window by one day so the oldest day stays complete
        await self.cache.incr(self._counter_key(now.date(), status), ttl_seconds=self.ttl_seconds + 86400)
        return entry

    async def recent(self, limit: int = 50) -> List[Dict[str, Any]]:
        keys = await self.cache.list_range(MAIL_LOG_INDEX_KEY, 0, limit - 1)
        entries = []
        for raw in await self.cache.mget(keys):
            if raw is None:
                # expired since it was indexed
                continue
            try:
                entries.append(json.loads(raw))
            except ValueError:
                logger.warning("mail_log_entry_corrupt")
        return entries

    async def stats(self) -> Dict[str, int]:
        days = self._window_days()
        statuses = list(MailStatus)
        keys = [self._counter_key(day, status) for day in days for status in statuses]
        totals = {status: 0 for status in statuses}
        for key, raw in zip(keys, await self.cache.mget(keys)):
            if raw is not None:
                totals[MailStatus(key.rsplit(":", 1)[1])] += int(raw)
        return {
            "total": sum(totals.values()),
            "sent": totals[MailStatus.SENT],
            "failed": totals[MailStatus.FAILED],
        }
