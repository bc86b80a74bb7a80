from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Optional

from llmhub.logging import get_logger, token_prefix

logger = get_logger(__name__)

VERIFICATION_SUBJECT = "Email Verification"
RESET_PASSWORD_SUBJECT = "Reset Password"

_SMTP_TIMEOUT_SECONDS = 30

_HTML_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: Helvetica, Arial, sans-serif; color: #222; line-height: 1.5; }}
        .wrap {{ max-width: 560px; margin: 0 auto; padding: 32px 16px; }}
        .cta {{ display: inline-block; padding: 10px 20px; background: #2563eb; color: #fff; border-radius: 6px; text-decoration: none; }}
        .small {{ margin-top: 32px; font-size: 12px; color: #666; }}
    </style>
</head>
<body>
    <div class="wrap">
        <h1>{heading}</h1>
        <p>{intro}</p>
        <p><a class="cta" href="{link}">{button}</a></p>
        <p>{note}</p>
        <div class="small">
            <p>{sender}</p>
            <p>Link not working? Paste this address into your browser: {link}</p>
        </div>
    </div>
</body>
</html>
"""

_TEXT_TEMPLATE = """{heading}

{intro}

{link}

{note}

--
{sender}
"""


class EmailService:
    """Transactional mail sender for verification and reset links.

    Sends over SMTP with STARTTLS or implicit TLS. When no SMTP host is
    configured the message is logged instead of sent (dev mode). Send methods
    return ``True`` on success and ``False`` on any delivery failure; the
    failure itself is logged here.
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
        from_name: str = "llmhub",
        token_ttl_hours: int = 24,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.token_ttl_hours = token_ttl_hours

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        local, sep, domain = email.partition("@")
        if not sep:
            return "redacted"
        return f"{local[:2]}***@{domain}"

    def _build_message(
        self, to_email: str, subject: str, html_body: str, text_body: str
    ) -> MIMEMultipart:
        message = MIMEMultipart("alternative")
        message["Subject"] = subject
        message["From"] = f"{self.from_name} <{self.from_email}>"
        message["To"] = to_email
        # Clients render the last alternative they support
        message.attach(MIMEText(text_body, "plain"))
        message.attach(MIMEText(html_body, "html"))
        return message

    def _open_connection(self) -> smtplib.SMTP:
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=_SMTP_TIMEOUT_SECONDS)
            server.starttls(context=context)
        else:
            server = smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=_SMTP_TIMEOUT_SECONDS
            )
        return server

    @staticmethod
    def _masked_link(link: str) -> str:
        """Link with its token cut down to the loggable prefix."""
        base, sep, token = link.partition("token=")
        if not sep:
            return base
        return f"{base}token={token_prefix(token) or ''}..."

    def _send_email(
        self, to_email: str, subject: str, html_body: str, text_body: str, link: str
    ) -> bool:
        recipient = self._redact_email(to_email)
        if not self.is_configured:
            # The body carries a live token; only the masked link is logged
            logger.info(
                "email_dev_mode", to=recipient, subject=subject, link_preview=self._masked_link(link)
            )
            return True

        message = self._build_message(to_email, subject, html_body, text_body)
        try:
            with self._open_connection() as server:
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to_email, message.as_string())
        except smtplib.SMTPAuthenticationError as exc:
            logger.error(
                "email_auth_failed",
                to=recipient,
                host=self.smtp_host,
                smtp_code=getattr(exc, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused:
            logger.error("email_recipient_refused", to=recipient)
            return False
        except smtplib.SMTPException as exc:
            logger.error(
                "email_smtp_error", to=recipient, host=self.smtp_host, error_type=type(exc).__name__
            )
            return False
        except ssl.SSLError as exc:
            logger.error("email_tls_failed", to=recipient, host=self.smtp_host, error=str(exc))
            return False
        except OSError as exc:
            # refused connection, DNS failure or timeout
            logger.error(
                "email_connect_failed",
                to=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
            )
            return False

        logger.info("email_sent", to=recipient, subject=subject)
        return True

    def _render(self, heading: str, intro: str, button: str, link: str, note: str) -> tuple[str, str]:
        html_body = _HTML_TEMPLATE.format(
            heading=escape(heading),
            intro=escape(intro),
            button=escape(button),
            link=escape(link, quote=True),
            note=escape(note),
            sender=escape(self.from_name),
        )
        text_body = _TEXT_TEMPLATE.format(
            heading=heading, intro=intro, link=link, note=note, sender=self.from_name
        )
        return html_body, text_body

    def _expiry_note(self) -> str:
        return f"This link will expire in {self.token_ttl_hours} hours."

    def send_verification(self, to_email: str, link: str) -> bool:
        html_body, text_body = self._render(
            "Verify your email",
            "Thanks for signing up. Confirm your email address with the link below.",
            "Verify Email",
            link,
            self._expiry_note(),
        )
        return self._send_email(to_email, VERIFICATION_SUBJECT, html_body, text_body, link)

    def send_password_reset(self, to_email: str, link: str) -> bool:
        html_body, text_body = self._render(
            "Reset your password",
            "We received a request to reset your password. Use the link below to choose a new one.",
            "Reset Password",
            link,
            f"{self._expiry_note()} If you did not ask for this, ignore this email.",
        )
        return self._send_email(to_email, RESET_PASSWORD_SUBJECT, html_body, text_body, link)
