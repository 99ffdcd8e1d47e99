"""Open the SSH channel to the build instance."""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING

from cvmforge.pipeline import StepAction
from cvmforge.ssh import SSHConfig, connect, resolve_host

if TYPE_CHECKING:
    from cvmforge.ssh import Communicator
    from cvmforge.state import BuildState

type Connector = Callable[..., Communicator]


def ssh_config_for(state: BuildState, host: str) -> SSHConfig:
    """Key-based when key material is present, password-based otherwise."""
    comm = state.config.comm
    private_key = state.key_pair.private_key if state.key_pair else ""
    return SSHConfig(
        host=host,
        username=comm.ssh_username,
        port=comm.ssh_port,
        private_key=private_key,
        password="" if private_key else comm.ssh_password,
    )


class Connect:
    """Resolves the instance address and connects over SSH."""

    name = "connect"

    def __init__(self, connector: Connector = connect) -> None:
        self._connector = connector
        self._connection: Communicator | None = None

    def run(self, state: BuildState) -> StepAction:
        comm = state.config.comm
        cancellation = state.cancellation

        host, instance = resolve_host(
            state.client,
            state.require_instance(),
            comm.ssh_interface,
            cancellation=cancellation,
        )
        state.instance = instance

        state.ui.say(f"waiting for SSH to become available on {host}:{comm.ssh_port}")
        self._connection = self._connector(
            ssh_config_for(state, host),
            timeout=comm.ssh_timeout,
            cancellation=cancellation,
        )
        state.communicator = self._connection
        state.ui.say("connected to SSH")
        return StepAction.CONTINUE

    def cleanup(self, state: BuildState) -> None:
        if self._connection is None:
            return
        try:
            self._connection.close()
        except Exception as e:
            state.cleanup_failed(f"could not close SSH connection: {e}", e)
        self._connection = None
        state.communicator = None
