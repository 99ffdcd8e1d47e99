"""Run provisioning over the established SSH channel."""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING

from cvmforge.pipeline import StepAction

if TYPE_CHECKING:
    from cvmforge.ssh import Communicator
    from cvmforge.state import BuildState
    from cvmforge.ui import Ui

type ProvisionHook = Callable[[Communicator, Ui], None]


class Provision:
    """Runs the configured shell commands, then the caller's hook."""

    name = "provision"

    def __init__(self, hook: ProvisionHook | None = None) -> None:
        self._hook = hook

    def run(self, state: BuildState) -> StepAction:
        communicator = state.require_communicator()

        for command in state.config.provision_commands:
            state.cancellation.raise_if_set()
            state.ui.say(f"provisioning with shell command: {command}")
            output = communicator.exec(command)
            for line in output.splitlines():
                state.ui.message(line)

        if self._hook is not None:
            state.cancellation.raise_if_set()
            state.ui.say("running provisioning hook")
            self._hook(communicator, state.ui)

        return StepAction.CONTINUE

    def cleanup(self, state: BuildState) -> None:
        pass
