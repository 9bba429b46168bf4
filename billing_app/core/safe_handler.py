import logging
from functools import wraps

from .errors import BillingError, InternalBillingError
from .friendly_msg import get_friendly_message

logger = logging.getLogger(__name__)


def safe_handler(func):
    @wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except BillingError as e:
            logger.warning(f"[{e.code}] in {func.__name__}: {e.detail}")
            raise
        except Exception as e:
            logger.error(f"[Unhandled Error] in {func.__name__}: {e}", exc_info=True)
            raise InternalBillingError(get_friendly_message(e)) from e

    return wrapper
