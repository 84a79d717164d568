import logging
import os
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid, parseaddr
from typing import Dict, List, Optional, Sequence

import sib_api_v3_sdk
from sib_api_v3_sdk.rest import ApiException

logger = logging.getLogger(__name__)

SMTP_SETTINGS = ("SMTP_HOST", "SMTP_PORT", "SMTP_USER", "SMTP_PASS", "SMTP_FROM_ADDRESS")
BREVO_SETTINGS = ("BREVO_API_KEY", "FROM_EMAIL")


class EmailConfigurationError(RuntimeError):
    """Outbound email is not configured on this server."""


class EmailDeliveryError(RuntimeError):
    """The transport rejected or failed to deliver the message."""


def get_email_provider() -> str:
    return os.getenv("EMAIL_PROVIDER", "smtp").strip().lower()


def _require_settings(names: Sequence[str]) -> Dict[str, str]:
    settings = {name: os.getenv(name) for name in names}
    missing = [name for name, value in settings.items() if not value]
    if missing:
        message = f"Email configuration is missing. Please set {', '.join(missing)} in your environment variables."
        logger.error(f"[EmailService] {message}")
        raise EmailConfigurationError(message)
    return settings


def ensure_email_configured() -> None:
    """Raise EmailConfigurationError unless the selected provider has all its settings."""
    if get_email_provider() == "brevo":
        _require_settings(BREVO_SETTINGS)
    else:
        _require_settings(SMTP_SETTINGS)


def _send_via_smtp(recipients: List[str], subject: str, html: str, text: Optional[str], bcc: bool) -> str:
    settings = _require_settings(SMTP_SETTINGS)
    from_header = settings["SMTP_FROM_ADDRESS"]
    from_addr = parseaddr(from_header)[1] or from_header
    port = int(settings["SMTP_PORT"])

    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = from_header
    # Bulk mail keeps the recipient list out of the headers
    msg["To"] = from_header if bcc else ", ".join(recipients)
    msg["Message-ID"] = make_msgid()
    if text:
        msg.attach(MIMEText(text, "plain", "utf-8"))
    msg.attach(MIMEText(html, "html", "utf-8"))

    context = ssl.create_default_context()
    if port == 465:
        server = smtplib.SMTP_SSL(settings["SMTP_HOST"], port, context=context)
    else:
        server = smtplib.SMTP(settings["SMTP_HOST"], port)
    with server:
        if port != 465:
            server.starttls(context=context)
        server.login(settings["SMTP_USER"], settings["SMTP_PASS"])
        server.send_message(msg, from_addr=from_addr, to_addrs=recipients)
    return msg["Message-ID"]


def _send_via_brevo(recipients: List[str], subject: str, html: str, text: Optional[str], bcc: bool) -> str:
    settings = _require_settings(BREVO_SETTINGS)
    configuration = sib_api_v3_sdk.Configuration()
    configuration.api_key["api-key"] = settings["BREVO_API_KEY"]
    api_instance = sib_api_v3_sdk.TransactionalEmailsApi(sib_api_v3_sdk.ApiClient(configuration))

    sender = {"email": settings["FROM_EMAIL"], "name": os.getenv("FROM_NAME", "Campus ERP")}
    if bcc:
        to = [{"email": settings["FROM_EMAIL"]}]
        bcc_list = [{"email": r} for r in recipients]
    else:
        to = [{"email": r} for r in recipients]
        bcc_list = None

    send_smtp_email = sib_api_v3_sdk.SendSmtpEmail(
        to=to,
        bcc=bcc_list,
        sender=sender,
        subject=subject,
        html_content=html,
        text_content=text,
    )
    api_response = api_instance.send_transac_email(send_smtp_email)
    return getattr(api_response, "message_id", "") or ""


def send_email(
    recipients: List[str],
    subject: str,
    html: str,
    text: Optional[str] = None,
    bcc: bool = False,
) -> str:
    """
    Send one email through the configured provider and return its message id.

    Raises EmailConfigurationError when the provider settings are incomplete
    and EmailDeliveryError when the transport fails.
    """
    provider = get_email_provider()
    ensure_email_configured()

    logger.info(f"[EmailService] Sending '{subject}' to {len(recipients)} recipient(s) via {provider}")
    try:
        if provider == "brevo":
            message_id = _send_via_brevo(recipients, subject, html, text, bcc)
        else:
            message_id = _send_via_smtp(recipients, subject, html, text, bcc)
    except ApiException as e:
        logger.error(f"❌ Brevo API error: {e}")
        raise EmailDeliveryError("Failed to send the email. Please check server logs for details.") from e
    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"❌ SMTP error: {e}")
        raise EmailDeliveryError("Failed to send the email. Please check server logs for details.") from e

    logger.info(f"✅ [EmailService] Message sent: {message_id}")
    return message_id
