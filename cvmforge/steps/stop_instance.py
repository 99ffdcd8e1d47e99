"""Stop the build instance ahead of snapshotting it."""

from __future__ import annotations

from typing import TYPE_CHECKING

from loguru import logger

from cvmforge.constants import InstanceState
from cvmforge.exceptions import (
    BuildCancelledError,
    CloudAPIError,
    CvmForgeError,
    RetryExhaustedError,
    StepError,
)
from cvmforge.pipeline import StepAction
from cvmforge.polling import StateChange, instance_state_refresh, wait_for_state
from cvmforge.retry import STOP_RETRY, retry

if TYPE_CHECKING:
    from cvmforge.state import BuildState

log = logger.bind(component="steps")


class StopInstance:
    """Stops the instance (or waits for the operator to) and detaches the key.

    Detaching the temporary key before the snapshot keeps the image from
    being bound to a key that is about to be deleted.
    """

    name = "stop-instance"

    def __init__(self, skip: bool = False) -> None:
        self._skip = skip

    def run(self, state: BuildState) -> StepAction:
        if self._skip:
            return StepAction.CONTINUE

        ui = state.ui
        client = state.client
        instance_id = state.require_instance().instance_id

        if not state.config.run.disable_stop_instance:
            ui.say("stopping source instance")
            attempt = 0

            def stop() -> bool:
                nonlocal attempt
                attempt += 1
                ui.message(f"stopping instance '{instance_id}', attempt {attempt}")
                try:
                    client.stop_instances([instance_id])
                except CloudAPIError as e:
                    log.warning("Stop {id} failed: {err}", id=instance_id, err=e)
                    return False
                return True

            try:
                retry(stop, policy=STOP_RETRY, cancellation=state.cancellation)
            except RetryExhaustedError as e:
                raise StepError(f"could not stop instance: {e}") from e
        else:
            ui.say(
                f"automatic instance stop disabled - please stop instance '{instance_id}' "
                "manually so execution can proceed"
            )

        ui.say(f"waiting for instance '{instance_id}' to stop")
        wait_for_state(
            StateChange(
                target=InstanceState.STOPPED,
                pending=(InstanceState.RUNNING, InstanceState.STOPPING),
                refresh=instance_state_refresh(client, instance_id),
                cancellation=state.cancellation,
            )
        )

        key_id = state.temporary_key_id
        if key_id and state.key_associated:

            def disassociate() -> bool:
                ui.say(
                    f"disassociating key '{key_id}' from instance '{instance_id}' before image creation"
                )
                try:
                    client.disassociate_key_pairs([instance_id], [key_id], force_stop=True)
                except CloudAPIError as e:
                    ui.error(f"could not disassociate key: {e}")
                    return False
                return True

            try:
                retry(disassociate, cancellation=state.cancellation)
            except BuildCancelledError:
                raise
            except CvmForgeError as e:
                ui.error(f"could not disassociate key: {e}")
            else:
                state.key_associated = False

        return StepAction.CONTINUE

    def cleanup(self, state: BuildState) -> None:
        pass
