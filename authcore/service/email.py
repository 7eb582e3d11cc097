from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.storage.models import SmtpConfig

logger = get_logger(__name__)


class EmailService:
    """Transactional mail over SMTP.

    The transport is read on every send: the SMTP record saved through
    ``/admin/smtp`` wins, and the ``SMTP_*`` settings are the fallback.
    Port 465 uses implicit TLS; any other port upgrades with STARTTLS when
    the server advertises it.
    """

    def __init__(self, settings: Settings, store=None) -> None:
        self.settings = settings
        self.store = store

    def resolve_config(self) -> Optional[SmtpConfig]:
        if self.store is not None:
            stored = self.store.get_smtp_config()
            if stored is not None:
                return stored
        if not self.settings.smtp_host:
            return None
        return SmtpConfig(
            host=self.settings.smtp_host,
            port=self.settings.smtp_port,
            username=self.settings.smtp_user or "",
            password=self.settings.smtp_password or "",
        )

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return self.resolve_config() is not None

    def default_from(self, config: Optional[SmtpConfig] = None) -> Optional[str]:
        config = config or self.resolve_config()
        address = self.settings.email_from_address or (config.username if config else None)
        if not address:
            return None
        return f"{self.settings.email_from_name} <{address}>"

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _open(self, config: SmtpConfig) -> smtplib.SMTP:
        timeout = self.settings.smtp_timeout_seconds
        context = ssl.create_default_context()
        if config.implicit_tls:
            return smtplib.SMTP_SSL(config.host, config.port, context=context, timeout=timeout)
        server = smtplib.SMTP(config.host, config.port, timeout=timeout)
        server.ehlo()
        if server.has_extn("starttls"):
            server.starttls(context=context)
            server.ehlo()
        return server

    def verify_config(self, config: SmtpConfig) -> bool:
        """Connect and authenticate with ``config`` without sending anything."""
        try:
            with self._open(config) as server:
                if config.username and config.password:
                    server.login(config.username, config.password)
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            logger.warning(
                "smtp_verify_failed",
                host=config.host,
                port=config.port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        logger.info("smtp_verified", host=config.host, port=config.port)
        return True

    def send(
        self,
        from_addr: Optional[str],
        to_addr: str,
        subject: str,
        text: str,
        html: Optional[str] = None,
    ) -> bool:
        """Send one message. Returns True if sent successfully, False otherwise."""
        config = self.resolve_config()
        if config is None:
            logger.error("email_not_configured", to=self._redact_email(to_addr))
            return False
        sender = from_addr or self.default_from(config)
        if not sender:
            logger.error("email_sender_missing", to=self._redact_email(to_addr))
            return False

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = sender
        msg["To"] = to_addr
        msg.attach(MIMEText(text, "plain"))
        if html:
            msg.attach(MIMEText(html, "html"))

        logger.debug(
            "email_connecting",
            host=config.host,
            port=config.port,
            implicit_tls=config.implicit_tls,
            to=self._redact_email(to_addr),
        )
        try:
            with self._open(config) as server:
                if config.username and config.password:
                    server.login(config.username, config.password)
                server.sendmail(sender, [to_addr], msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_addr),
                host=config.host,
                error=str(e),
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPConnectError as e:
            logger.error(
                "email_connect_failed",
                to=self._redact_email(to_addr),
                host=config.host,
                port=config.port,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_addr),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_addr),
                host=config.host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except ssl.SSLError as e:
            logger.error(
                "email_ssl_error",
                to=self._redact_email(to_addr),
                host=config.host,
                port=config.port,
                error=str(e),
            )
            return False
        except OSError as e:
            # Covers socket timeouts and refused connections
            logger.error(
                "email_transport_error",
                to=self._redact_email(to_addr),
                host=config.host,
                port=config.port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=self._redact_email(to_addr), subject=subject)
        return True

    def send_otp(self, to_addr: str, code: str, ttl_seconds: int) -> bool:
        minutes = max(1, ttl_seconds // 60)
        text = f"Your OTP is {code}. It expires in {minutes} minutes."
        html = f"<p>Your OTP is <b>{code}</b>. It expires in {minutes} minutes.</p>"
        return self.send(None, to_addr, self.settings.otp_email_subject, text, html)
