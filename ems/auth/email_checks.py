import logging

from email_validator import EmailNotValidError, EmailUndeliverableError, validate_email
from starlette.concurrency import run_in_threadpool

from ems.config import settings
from ems.core.exceptions import ValidationFailed

logger = logging.getLogger(__name__)

EMAIL_INVALID = "Email address format is invalid."
EMAIL_DISPOSABLE = "Disposable email addresses are not allowed."
EMAIL_NO_MX_RECORDS = "Email domain is not valid."


def is_disposable(email: str) -> bool:
    domain = email.rsplit("@", 1)[-1].lower().rstrip(".")
    for blocked in settings.SIGNUP_BLOCKED_EMAIL_DOMAINS:
        blocked = blocked.lower()
        if domain == blocked or domain.endswith("." + blocked):
            return True
    return False


async def screen_signup_email(email: str) -> None:
    """Reject disposable addresses and, when enabled, domains that cannot receive mail."""
    if is_disposable(email):
        logger.info("Signup rejected for disposable address domain of %s", email)
        raise ValidationFailed(EMAIL_DISPOSABLE)

    if not settings.SIGNUP_EMAIL_CHECK_DELIVERABILITY:
        return

    # validate_email resolves MX records synchronously.
    try:
        await run_in_threadpool(validate_email, email, check_deliverability=True)
    except EmailUndeliverableError:
        logger.info("Signup rejected for undeliverable address %s", email)
        raise ValidationFailed(EMAIL_NO_MX_RECORDS)
    except EmailNotValidError:
        raise ValidationFailed(EMAIL_INVALID)
