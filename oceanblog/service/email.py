from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from oceanblog.config import Settings
from oceanblog.logging import get_logger

logger = get_logger(__name__)

_STYLE = """
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #0077b6; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
"""

_HTML_TEMPLATE = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>{style}</style>
</head>
<body>
    <div class="container">
        <h1>{heading}</h1>
        <p>{intro}</p>
        {action}
        <p>{outro}</p>
        <div class="footer">
            <p>{brand}</p>
            {fallback}
        </div>
    </div>
</body>
</html>
"""


class EmailService:
    """Transactional email for account lifecycle events.

    Three modes, decided once at construction:

    - disabled (``enabled=False``): nothing is sent, every send returns False
    - log-only (enabled, no SMTP host): the message is logged and counts as sent,
      which is what local development and the test suite rely on
    - SMTP (enabled with host and sender): STARTTLS or implicit TLS delivery

    Send methods are blocking; async callers wrap them in ``asyncio.to_thread``.
    """

    def __init__(
        self,
        *,
        enabled: bool = True,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Ocean Blog",
        client_url: Optional[str] = None,
    ) -> None:
        self.enabled = enabled
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.client_url = (client_url or "http://localhost:3000").rstrip("/")

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailService":
        return cls(
            enabled=settings.email_enabled,
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            client_url=settings.client_url,
        )

    @property
    def is_configured(self) -> bool:
        """True when SMTP delivery (not just logging) will be attempted."""
        return bool(self.enabled and self.smtp_host and self.from_email)

    @property
    def mode(self) -> str:
        if not self.enabled:
            return "disabled"
        return "smtp" if self.is_configured else "log"

    def _redact_email(self, email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP.

        Returns True if sent (or logged in log-only mode), False otherwise.
        """
        if not self.enabled:
            logger.info("email_disabled_skip", to=self._redact_email(to_email), subject=subject)
            return False

        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200] if text_body else html_body[:200],
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            if text_body:
                msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

            context = ssl.create_default_context()
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())

            logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            # connection refused, DNS failure, timeouts
            logger.error(
                "email_transport_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def _render(
        self,
        *,
        heading: str,
        intro: str,
        outro: str,
        url: Optional[str] = None,
        button: Optional[str] = None,
    ) -> tuple[str, str]:
        action = ""
        fallback = ""
        if url:
            action = f'<p style="margin: 30px 0;"><a href="{url}" class="button">{button}</a></p>'
            fallback = f"<p>If the button doesn't work, copy and paste this URL: {url}</p>"
        html_body = _HTML_TEMPLATE.format(
            style=_STYLE.format(),
            heading=heading,
            intro=intro,
            action=action,
            outro=outro,
            brand=self.from_name,
            fallback=fallback,
        )
        text_lines = [heading, "", intro, ""]
        if url:
            text_lines += [url, ""]
        text_lines += [outro, "", "---", self.from_name, ""]
        return html_body, "\n".join(text_lines)

    def send_welcome(self, to_email: str, name: str) -> bool:
        html_body, text_body = self._render(
            heading=f"Welcome to {self.from_name}, {name}!",
            intro="Your account is ready. Start writing, commenting and following the authors you like.",
            outro="Happy blogging!",
            url=self.client_url,
            button="Open the blog",
        )
        return self._send_email(to_email, f"Welcome to {self.from_name}", html_body, text_body)

    def send_email_verification(self, to_email: str, token: str, *, expires_hours: int = 24) -> bool:
        verify_url = f"{self.client_url}/verify-email?token={token}"
        html_body, text_body = self._render(
            heading="Verify your email",
            intro="Please confirm your email address to finish setting up your account.",
            outro=f"This link will expire in {expires_hours} hours.",
            url=verify_url,
            button="Verify Email",
        )
        return self._send_email(
            to_email, f"Verify your {self.from_name} email", html_body, text_body
        )

    def send_password_reset(self, to_email: str, token: str, *, expires_minutes: int = 60) -> bool:
        reset_url = f"{self.client_url}/reset-password?token={token}"
        html_body, text_body = self._render(
            heading="Reset your password",
            intro="We received a request to reset your password. Use the link below to choose a new one.",
            outro=(
                f"This link will expire in {expires_minutes} minutes. "
                "If you didn't request this, you can safely ignore this email."
            ),
            url=reset_url,
            button="Reset Password",
        )
        return self._send_email(
            to_email, f"Reset your {self.from_name} password", html_body, text_body
        )
