"""
structlog configuration for the keeper.

Everything goes through stdlib logging so third-party output (web3,
websockets, httpx) lands in the same stream. Console rendering for a
terminal, JSON lines for production. Process-wide context such as the
actor address is attached with bind_keeper_context().
"""
import logging
import sys
from typing import Any, Optional

import structlog

# Chatty at INFO; only their warnings are interesting.
NOISY_LOGGERS = ("web3", "websockets", "httpx", "httpcore", "urllib3", "asyncio")


def _processors(json_output: bool) -> list[structlog.types.Processor]:
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    if json_output:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(
            structlog.dev.ConsoleRenderer(
                colors=sys.stdout.isatty(),
                exception_formatter=structlog.dev.plain_traceback,
            )
        )
    return processors


def setup_logging(
    level: str = "INFO",
    json_output: bool = False,
    log_file: Optional[str] = None,
) -> structlog.stdlib.BoundLogger:
    """Configure stdlib logging and structlog.

    Args:
        level: DEBUG, INFO, WARNING or ERROR. Unknown names fall back to INFO.
        json_output: Render JSON lines instead of the console format.
        log_file: Also append to this file.
    """
    log_level = logging.getLevelName(level.upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(format="%(message)s", level=log_level, handlers=handlers, force=True)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

    structlog.contextvars.clear_contextvars()
    structlog.configure(
        processors=_processors(json_output),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    return structlog.get_logger("keeper")


def bind_keeper_context(**values: Any) -> None:
    """Attach key/values to every subsequent log line of this context."""
    structlog.contextvars.bind_contextvars(**values)


def get_logger(name: str = "keeper") -> structlog.stdlib.BoundLogger:
    """Logger under the 'keeper.' namespace."""
    if name != "keeper" and not name.startswith("keeper."):
        name = f"keeper.{name}"
    return structlog.get_logger(name)
