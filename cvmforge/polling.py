"""Polling primitives for long-running asynchronous cloud operations.

A refresh function reports the current view of one remote resource as
``(resource, state)``; ``resource`` is None while the resource cannot be
found. Raising from refresh is a refresh error.

Timeout and interval come from ``CVMFORGE_TIMEOUT_SECONDS`` and
``CVMFORGE_POLL_DELAY_SECONDS`` and are read once per polling call.
"""

from __future__ import annotations

import math
import os
import time
from collections.abc import Callable, Collection
from dataclasses import dataclass
from typing import TYPE_CHECKING

from loguru import logger

from cvmforge.cloud.types import private_images_named
from cvmforge.constants import (
    DEFAULT_POLL_DELAY_SECONDS,
    DEFAULT_TIMEOUT_SECONDS,
    POLL_DELAY_ENV,
    TIMEOUT_ENV,
)
from cvmforge.exceptions import (
    CloudAPIError,
    PollTimeoutError,
    ResourceNotFoundError,
    UnexpectedStateError,
)

if TYPE_CHECKING:
    from cvmforge.cloud.types import CloudClient, Image, Instance
    from cvmforge.state import Cancellation

log = logger.bind(component="polling")

type Refresh[T] = Callable[[], tuple[T | None, str]]


def _env_seconds(name: str, default: float, label: str) -> float:
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        log.warning("Invalid {label} seconds '{raw}', using default", label=label, raw=raw)
        return default
    if value <= 0 or math.isinf(value) or math.isnan(value):
        log.warning("Invalid {label} seconds '{raw}', using default", label=label, raw=raw)
        return default
    return value


@dataclass(frozen=True, slots=True)
class PollSettings:
    timeout: float = DEFAULT_TIMEOUT_SECONDS
    interval: float = DEFAULT_POLL_DELAY_SECONDS

    @classmethod
    def from_env(cls) -> PollSettings:
        timeout = _env_seconds(TIMEOUT_ENV, DEFAULT_TIMEOUT_SECONDS, "timeout")
        interval = _env_seconds(POLL_DELAY_ENV, DEFAULT_POLL_DELAY_SECONDS, "sleep")
        log.debug(
            "Allowing {timeout}s to complete, polling every {interval}s "
            "(change with {t_env} / {i_env})",
            timeout=timeout,
            interval=interval,
            t_env=TIMEOUT_ENV,
            i_env=POLL_DELAY_ENV,
        )
        return cls(timeout=timeout, interval=interval)

    @property
    def max_ticks(self) -> int:
        return max(1, math.ceil(self.timeout / self.interval))


@dataclass(frozen=True, slots=True)
class StateChange[T]:
    """What to poll, what to wait for, and what counts as still in progress."""

    target: str
    refresh: Refresh[T]
    pending: Collection[str] = ()
    cancellation: Cancellation | None = None


def _sleep(conf: StateChange[object], seconds: float) -> None:
    if conf.cancellation is not None:
        conf.cancellation.wait(seconds)
    else:
        time.sleep(seconds)


def _check_cancelled(conf: StateChange[object]) -> None:
    if conf.cancellation is not None:
        conf.cancellation.raise_if_set()


def wait_for_state[T](conf: StateChange[T], settings: PollSettings | None = None) -> T:
    """Poll until the resource reaches ``conf.target``.

    Raises:
        PollTimeoutError: the resource stayed missing past the tick budget.
        UnexpectedStateError: the resource entered a state that is neither
            pending nor the target.
        BuildCancelledError: the build was cancelled.
    """
    settings = settings or PollSettings.from_env()
    log.info("Waiting for state to become: {target}", target=conf.target)

    max_ticks = settings.max_ticks
    not_found = 0

    while True:
        resource, state = conf.refresh()

        if resource is None:
            not_found += 1
            if not_found > max_ticks:
                raise PollTimeoutError("couldn't find resource")
        else:
            not_found = 0
            if state == conf.target:
                return resource

        _check_cancelled(conf)

        if resource is not None and state not in conf.pending:
            raise UnexpectedStateError(state, conf.target)

        _sleep(conf, settings.interval)


def wait_for_exists[T](conf: StateChange[T], settings: PollSettings | None = None) -> T:
    """Poll until the resource can be found, whatever its state."""
    settings = settings or PollSettings.from_env()
    log.info("Waiting for resource to exist")

    max_ticks = settings.max_ticks
    not_found = 0

    while True:
        try:
            resource, _ = conf.refresh()
        except Exception as e:
            raise ResourceNotFoundError() from e

        if resource is not None:
            return resource

        not_found += 1
        if not_found > max_ticks:
            raise ResourceNotFoundError()

        _check_cancelled(conf)
        _sleep(conf, settings.interval)


def wait_for_does_not_exist(
    conf: StateChange[object],
    settings: PollSettings | None = None,
) -> None:
    """Poll until the resource can no longer be found.

    A resource that still reports ``conf.target`` (e.g. TERMINATED) is
    treated as gone.
    """
    settings = settings or PollSettings.from_env()
    log.info("Waiting for resource to cease to exist")

    max_ticks = settings.max_ticks
    found = 0

    while True:
        try:
            resource, state = conf.refresh()
        except Exception as e:
            raise ResourceNotFoundError() from e

        if resource is None or state == conf.target:
            return

        found += 1
        if found > max_ticks:
            raise PollTimeoutError("resource still exists after timeout")

        _check_cancelled(conf)
        _sleep(conf, settings.interval)


# =============================================================================
# Refresh functions
# =============================================================================


def image_state_refresh(client: CloudClient, image_id: str) -> Refresh[Image]:
    def refresh() -> tuple[Image | None, str]:
        try:
            page = client.describe_images(image_ids=[image_id])
        except CloudAPIError as e:
            log.warning("Describing image {id} failed: {err}", id=image_id, err=e)
            return None, ""
        if not page.images:
            return None, ""
        return page.images[0], page.images[0].state

    return refresh


def image_exists_refresh(client: CloudClient, image_name: str) -> Refresh[Image]:
    filters = private_images_named(image_name)

    def refresh() -> tuple[Image | None, str]:
        try:
            page = client.describe_images(filters=filters, limit=1)
        except CloudAPIError as e:
            log.warning("Listing images named {name} failed: {err}", name=image_name, err=e)
            return None, ""
        if not page.images:
            return None, ""
        return page.images[0], page.images[0].state

    return refresh


def instance_state_refresh(client: CloudClient, instance_id: str) -> Refresh[Instance]:
    def refresh() -> tuple[Instance | None, str]:
        try:
            instances = client.describe_instances([instance_id])
        except CloudAPIError as e:
            log.warning("Describing instance {id} failed: {err}", id=instance_id, err=e)
            return None, ""
        if not instances:
            return None, ""
        return instances[0], instances[0].state

    return refresh
