"""Outbound billing notices over SMTP.

Delivery is fire-and-forget from the caller's point of view: ``notify_*``
helpers log a failed send and return False instead of raising, so a mail
outage never blocks a billing transition.
"""

import logging
import smtplib
from email.message import EmailMessage
from socket import gaierror, timeout

from config_models import EmailConfig

logger = logging.getLogger(__name__)


class NotificationError(Exception):
    """Exception raised for email sending errors."""

    pass


def send_email(config: EmailConfig, subject: str, recipient: str, body: str) -> bool:
    """Send a plain-text email.

    Raises:
        NotificationError: If email sending fails.
    """
    message = EmailMessage()
    message["Subject"] = subject
    message["From"] = config.sender
    message["To"] = recipient
    message.set_content(body)

    try:
        logger.info("Sending email to %s with subject: %s", recipient, subject)
        with smtplib.SMTP(config.smtp_host, config.smtp_port, timeout=30) as server:
            server.starttls()
            if config.smtp_user:
                server.login(config.smtp_user, config.smtp_password)
            server.send_message(message)
        logger.info("Email sent successfully to %s", recipient)
        return True

    except smtplib.SMTPAuthenticationError as e:
        logger.error("SMTP authentication failed: %s", e)
        raise NotificationError(f"Email authentication failed: {e}")

    except smtplib.SMTPRecipientsRefused as e:
        logger.error("Recipients refused: %s", e)
        raise NotificationError(f"Email recipients refused: {e}")

    except smtplib.SMTPException as e:
        logger.error("SMTP error: %s", e)
        raise NotificationError(f"Failed to send email: {e}")

    except (gaierror, timeout) as e:
        logger.error("Network error while sending email: %s", e)
        raise NotificationError(f"Network error: could not connect to mail server: {e}")

    except OSError as e:
        logger.error("OS error while sending email: %s", e)
        raise NotificationError(f"Failed to send email: {e}")


def _dispatch(config: EmailConfig, subject: str, recipient: str, body: str) -> bool:
    if not config.enabled:
        logger.info("Email disabled; skipping '%s' to %s", subject, recipient)
        return False
    if not recipient:
        logger.warning("No recipient for '%s'; notice not sent", subject)
        return False
    try:
        return send_email(config, subject, recipient, body)
    except NotificationError as e:
        logger.warning("Notice '%s' to %s not delivered: %s", subject, recipient, e)
        return False


def notify_license_expiring(config: EmailConfig, user, organization, lic) -> bool:
    subject = f"Your {organization.name} license expires on {lic.valid_until:%Y-%m-%d}"
    body = (
        f"Hello {user.full_name or user.username},\n\n"
        f"Your license {lic.license_key} for {organization.name} is valid until "
        f"{lic.valid_until:%Y-%m-%d}. If the subscription is not renewed by then, "
        "access will end on that date.\n"
    )
    return _dispatch(config, subject, user.email, body)


def notify_payment_failed(config: EmailConfig, organization, txn) -> bool:
    subject = f"Payment failed for {organization.name}"
    lines = [
        f"We could not collect {txn.total_amount} {txn.currency} for your subscription.",
        f"Reason: {txn.error_message or 'unknown'}",
    ]
    if txn.next_retry_at:
        lines.append(f"We will retry on {txn.next_retry_at:%Y-%m-%d %H:%M} UTC.")
    else:
        lines.append("No further retries are scheduled; please update your payment method.")
    return _dispatch(config, subject, organization.billing_email, "\n".join(lines) + "\n")


def notify_subscription_expired(config: EmailConfig, organization, reason: str) -> bool:
    subject = f"Subscription for {organization.name} has expired"
    body = (
        f"The subscription for {organization.name} has expired ({reason}).\n"
        "All licenses have been revoked. Start a new subscription to restore access.\n"
    )
    return _dispatch(config, subject, organization.billing_email, body)


def notify_renewed(config: EmailConfig, organization, sub) -> bool:
    subject = f"Subscription for {organization.name} renewed"
    body = (
        f"The subscription for {organization.name} was renewed for "
        f"{sub.cycle_amount} {sub.currency}.\n"
        f"Period: {sub.current_period_start:%Y-%m-%d} to {sub.current_period_end:%Y-%m-%d}\n"
        f"Licenses in use: {sub.licenses_used} of {sub.capacity}\n"
        f"Next renewal: {(sub.next_billing_date or sub.current_period_end):%Y-%m-%d}\n"
    )
    return _dispatch(config, subject, organization.billing_email, body)
