"""Build logging on top of loguru.

Every module logs through ``logger.bind(component=...)``. Nothing is emitted
until a caller installs sinks; the library stays silent otherwise.

Example:
    from cvmforge.logging import LogConfig, logging_session

    config = LogConfig(level="DEBUG", file="build.log", redact=(secret_key,))
    with logging_session(config):
        builder.run()
"""

from __future__ import annotations

import sys
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Literal

from loguru import logger

from cvmforge.config import scrub

logger.disable("cvmforge")

type LogLevel = Literal["TRACE", "DEBUG", "INFO", "WARNING", "ERROR"]
type RecordFilter = Callable[[dict[str, Any]], bool]

CONSOLE_FORMAT = (
    "<dim>{time:HH:mm:ss}</dim> "
    "<level>{level: <7}</level> "
    "<magenta>[{extra[component]}]</magenta> "
    "<level>{message}</level>"
)

FILE_FORMAT = "{time:YYYY-MM-DDTHH:mm:ss.SSSZZ} {level: <7} [{extra[component]}] {module}:{line} {message}"


@dataclass(frozen=True, slots=True)
class LogConfig:
    """Where build logs go.

    Attributes:
        level: Console threshold; the file sink always records DEBUG.
        file: Optional path of a rotating log file.
        console: Emit to stderr.
        rotation: When to start a new file (e.g. "50 MB", "1 day").
        retention: How many rotated files to keep.
        redact: Strings replaced by a placeholder in every record.
    """

    level: LogLevel = "INFO"
    file: str | None = None
    console: bool = True
    rotation: str = "50 MB"
    retention: int = 10
    redact: tuple[str, ...] = ()


def record_filter(redact: tuple[str, ...] = ()) -> RecordFilter:
    """Accept only cvmforge records, filling in a component and scrubbing secrets."""

    def accept(record: dict[str, Any]) -> bool:
        name = record["name"]
        if name is None or not name.startswith("cvmforge"):
            return False
        record["extra"].setdefault("component", name.rsplit(".", 1)[-1])
        if redact:
            record["message"] = scrub(record["message"], *redact)
        return True

    return accept


def setup_logging(config: LogConfig) -> list[int]:
    """Install the configured sinks and return their handler ids."""
    accept = record_filter(config.redact)
    handler_ids: list[int] = []

    if config.console:
        handler_ids.append(
            logger.add(sys.stderr, level=config.level, format=CONSOLE_FORMAT, colorize=True, filter=accept)
        )
    if config.file:
        handler_ids.append(
            logger.add(
                config.file,
                level="DEBUG",
                format=FILE_FORMAT,
                rotation=config.rotation,
                retention=config.retention,
                compression="zip",
                diagnose=False,  # tracebacks would expose credentials
                enqueue=True,
                filter=accept,
            )
        )

    logger.enable("cvmforge")
    return handler_ids


def teardown_logging(handler_ids: list[int]) -> None:
    """Remove sinks installed by ``setup_logging`` and silence the library."""
    logger.disable("cvmforge")
    for hid in handler_ids:
        logger.remove(hid)


@contextmanager
def logging_session(config: LogConfig) -> Iterator[list[int]]:
    handler_ids = setup_logging(config)
    try:
        yield handler_ids
    finally:
        teardown_logging(handler_ids)
