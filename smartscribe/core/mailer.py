"""
OTP and password-reset email delivery via fastapi-mail.

Credentials come from the ``mail`` config section (usually filled from the
MAIL_* environment variables). Without them the mailer is unconfigured and
every send raises ProviderError so the caller can report it.
"""

import logging
from typing import Any, Dict, Optional

from fastapi_mail import ConnectionConfig, FastMail, MessageSchema, MessageType

from smartscribe.core.errors import ProviderError

logger = logging.getLogger(__name__)

_REQUIRED_SETTINGS = ("username", "password", "from_address", "server")


class Mailer:
    def __init__(self, settings: Optional[Dict[str, Any]] = None):
        self.settings = dict(settings or {})
        self._conf: Optional[ConnectionConfig] = None

    @property
    def configured(self) -> bool:
        return all(self.settings.get(key) for key in _REQUIRED_SETTINGS)

    def _connection(self) -> ConnectionConfig:
        if not self.configured:
            raise ProviderError("Email service is not configured")
        if self._conf is None:
            port = int(self.settings.get("port") or 587)
            self._conf = ConnectionConfig(
                MAIL_USERNAME=self.settings["username"],
                MAIL_PASSWORD=self.settings["password"],
                MAIL_FROM=self.settings["from_address"],
                MAIL_FROM_NAME=self.settings.get("from_name") or "SmartScribe",
                MAIL_PORT=port,
                MAIL_SERVER=self.settings["server"],
                MAIL_STARTTLS=bool(self.settings.get("starttls", port != 465)),
                MAIL_SSL_TLS=bool(self.settings.get("ssl_tls", port == 465)),
                USE_CREDENTIALS=True,
            )
        return self._conf

    async def send(self, recipient: str, subject: str, html: str) -> None:
        """
        Send one HTML email.

        Raises:
            ProviderError: If the mailer is unconfigured or delivery failed
        """
        message = MessageSchema(
            subject=subject,
            recipients=[recipient],
            body=html,
            subtype=MessageType.html,
        )
        conf = self._connection()
        try:
            await FastMail(conf).send_message(message)
        except Exception as e:
            logger.error(f"Failed to send email '{subject}': {e}")
            raise ProviderError("Failed to send email") from e
        logger.info(f"Email '{subject}' sent")

    async def send_signup_otp(self, recipient: str, code: str) -> None:
        await self.send(
            recipient,
            "Your SmartScribe verification code",
            f"""
            <html>
                <body>
                    <h2>Verify your email</h2>
                    <p>Your SmartScribe verification code is:</p>
                    <h1 style="letter-spacing: 4px;">{code}</h1>
                    <p>The code expires in 10 minutes.</p>
                </body>
            </html>
            """,
        )

    async def send_password_reset(
        self, recipient: str, code: str, reset_link: Optional[str]
    ) -> None:
        link_html = (
            f'<p>Or reset it directly: <a href="{reset_link}">Reset password</a></p>'
            if reset_link
            else ""
        )
        await self.send(
            recipient,
            "Reset your SmartScribe password",
            f"""
            <html>
                <body>
                    <h2>Password reset</h2>
                    <p>Use this code to reset your password:</p>
                    <h1 style="letter-spacing: 4px;">{code}</h1>
                    {link_html}
                    <p>If you did not request this, you can ignore this email.</p>
                </body>
            </html>
            """,
        )


_mailer: Optional[Mailer] = None


def get_mailer() -> Mailer:
    global _mailer
    if _mailer is None:
        from smartscribe.config import get_config

        _mailer = Mailer(get_config().mail)
        if not _mailer.configured:
            logger.warning("Mail credentials missing; OTP and reset emails will fail")
    return _mailer


def set_mailer(mailer: Optional[Mailer]) -> None:
    global _mailer
    _mailer = mailer
