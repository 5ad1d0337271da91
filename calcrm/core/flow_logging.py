import logging

from calcrm.core.config import settings


def _category_enabled(category: str | None) -> bool:
    if not settings.FLOW_LOGS_ENABLED:
        return False
    if category == "locks":
        return settings.FLOW_LOGS_LOCKS_ENABLED
    if category == "presence":
        return settings.FLOW_LOGS_PRESENCE_ENABLED
    return True


def flow_info(
    logger: logging.Logger,
    msg: str,
    *args,
    category: str | None = None,
    **kwargs,
) -> None:
    if _category_enabled(category):
        logger.info(msg, *args, **kwargs)
