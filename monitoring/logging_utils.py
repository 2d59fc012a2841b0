import logging
from typing import Optional, Union

DEFAULT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
# third-party loggers that are chatty at INFO
QUIET_LOGGERS = ("websockets", "aiohttp.access", "uvicorn.access")


def resolve_level(level: Union[int, str, None]) -> int:
    if isinstance(level, int):
        return level
    if not level:
        return logging.INFO
    value = logging.getLevelName(str(level).upper())
    return value if isinstance(value, int) else logging.INFO


def setup_logging(level: Union[int, str, None] = logging.INFO, log_format: Optional[str] = None) -> None:
    """
    Configure process-wide logging with a consistent format.

    Called once from the entrypoint; later calls are ignored if the root
    logger already has handlers.
    """
    if logging.getLogger().handlers:
        return

    resolved = resolve_level(level)
    logging.basicConfig(level=resolved, format=log_format or DEFAULT_FORMAT)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(resolved, logging.WARNING))
