"""
Participant invitations.

Fire-and-forget: sent from a background task after the meeting is created.
Without SMTP configuration the link is logged instead. Failures are logged
and never propagate to the request that created the meeting.
"""
import asyncio
import smtplib
from email.message import EmailMessage

from a2mp.config import get_settings
from a2mp.utils.logger import get_logger

logger = get_logger(__name__)

INVITATION_SUBJECT = "You're invited to contribute: {subject}"
INVITATION_BODY = """You have been invited to an asynchronous AI meeting.

Subject: {subject}

Share your perspective once using the link below. An AI persona will represent
you in the discussion and a report will be available when the meeting ends.

{url}
"""


# ──────────────────────────────────────────────────────
#  SMTP (sync, run in an executor)
# ──────────────────────────────────────────────────────

def _send_smtp(
    host: str,
    port: int,
    user: str,
    password: str,
    sender: str,
    recipient: str,
    subject: str,
    body: str,
) -> None:
    message = EmailMessage()
    message["From"] = sender
    message["To"] = recipient
    message["Subject"] = subject
    message.set_content(body)

    with smtplib.SMTP(host, port, timeout=30) as smtp:
        smtp.starttls()
        if user:
            smtp.login(user, password)
        smtp.send_message(message)


async def send_invitation(email: str, subject: str, url: str) -> bool:
    """Send one invitation; returns False when it was only logged or failed"""
    settings = get_settings()

    if not settings.SMTP_HOST:
        logger.info(f"SMTP not configured - invitation for {email}: {url}")
        return False

    loop = asyncio.get_running_loop()
    try:
        await loop.run_in_executor(
            None,
            _send_smtp,
            settings.SMTP_HOST,
            settings.SMTP_PORT,
            settings.SMTP_USER,
            settings.SMTP_PASSWORD,
            settings.MAIL_FROM,
            email,
            INVITATION_SUBJECT.format(subject=subject),
            INVITATION_BODY.format(subject=subject, url=url),
        )
    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Email error sending invitation to {email}: {e} (link: {url})")
        return False

    logger.info(f"Invitation sent to {email}")
    return True


async def send_invitations(invitations: list, subject: str) -> int:
    """invitations: [(email, url), ...]; returns how many were delivered"""
    sent = 0
    for email, url in invitations:
        if await send_invitation(email, subject, url):
            sent += 1
    return sent
