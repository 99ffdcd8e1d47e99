"""Execution state shared by the steps of one build run.

Steps never call each other; everything they need from an earlier step is
read from ``BuildState`` and everything they produce is written back to it.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from cvmforge.exceptions import BuildCancelledError
from cvmforge.pipeline import StepAction

if TYPE_CHECKING:
    from cvmforge.cloud.types import CloudClient, Image, Instance
    from cvmforge.config import BuildConfig
    from cvmforge.ssh import Communicator
    from cvmforge.ui import Ui


class Cancellation:
    """One-way cancellation latch.

    Safe to set from another thread (e.g. a signal handler). Once set it
    stays set for the rest of the run.
    """

    __slots__ = ("_event",)

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; returns True early if cancelled."""
        return self._event.wait(seconds)

    def raise_if_set(self) -> None:
        if self._event.is_set():
            raise BuildCancelledError()


@dataclass(frozen=True, slots=True)
class KeyMaterial:
    """SSH key material for the build instance.

    ``key_id`` is only set for a temporary key pair created by this build.
    """

    key_name: str = ""
    private_key: str = ""
    key_id: str = ""

    @property
    def temporary(self) -> bool:
        return bool(self.key_id)


@dataclass
class BuildState:
    """Typed replacement for a free-form state bag."""

    config: BuildConfig
    client: CloudClient
    ui: Ui
    cancellation: Cancellation = field(default_factory=Cancellation)

    source_image: Image | None = None
    key_pair: KeyMaterial | None = None
    key_associated: bool = False
    instance: Instance | None = None
    communicator: Communicator | None = None
    images: dict[str, str] | None = None

    error: BaseException | None = None
    halted: bool = False
    cleanup_errors: list[BaseException] = field(default_factory=list)

    @property
    def cancelled(self) -> bool:
        return self.cancellation.is_set()

    @property
    def unwinding(self) -> bool:
        """True when cleanup runs because the build did not complete."""
        return self.halted or self.cancelled

    def halt(self, error: BaseException) -> StepAction:
        """Record a fatal error and stop forward progress.

        Only the first error is kept; it is the one surfaced to the caller.
        """
        if self.error is None:
            self.error = error
        self.halted = True
        return StepAction.HALT

    def cleanup_failed(self, message: str, error: BaseException) -> None:
        """Report a best-effort cleanup failure without escalating it."""
        self.ui.error(message)
        self.cleanup_errors.append(error)

    def require_source_image(self) -> Image:
        if self.source_image is None:
            raise RuntimeError("source image has not been resolved")
        return self.source_image

    def require_instance(self) -> Instance:
        if self.instance is None:
            raise RuntimeError("build instance has not been launched")
        return self.instance

    def require_communicator(self) -> Communicator:
        if self.communicator is None:
            raise RuntimeError("no connection to the build instance")
        return self.communicator

    @property
    def temporary_key_id(self) -> str:
        return self.key_pair.key_id if self.key_pair else ""
