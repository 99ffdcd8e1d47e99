"""Launch the ephemeral build instance and tear it down again."""

from __future__ import annotations

import base64
import binascii
from pathlib import Path
from typing import TYPE_CHECKING

from loguru import logger

from cvmforge.cloud.types import LaunchRequest
from cvmforge.config import temporary_name
from cvmforge.constants import InstanceState
from cvmforge.exceptions import (
    CloudAPIError,
    ConfigError,
    CvmForgeError,
    ResourceNotFoundError,
    StepError,
)
from cvmforge.pipeline import StepAction
from cvmforge.polling import (
    StateChange,
    instance_state_refresh,
    wait_for_does_not_exist,
    wait_for_state,
)
from cvmforge.retry import retry

if TYPE_CHECKING:
    from cvmforge.config import BuildConfig
    from cvmforge.state import BuildState

log = logger.bind(component="steps")


def encode_user_data(data: str) -> str:
    """Base64-encode ``data`` unless it already is valid base64."""
    if not data:
        return ""
    try:
        base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError):
        log.debug("base64 encoding user data")
        return base64.b64encode(data.encode()).decode()
    return data


def read_user_data(config: BuildConfig) -> str:
    if not config.run.user_data_file:
        return config.run.user_data
    try:
        return Path(config.run.user_data_file).read_text()
    except OSError as e:
        raise ConfigError([f"could not read user data file: {e}"]) from e


def build_launch_request(state: BuildState, instance_name: str, user_data: str) -> LaunchRequest:
    """Translate configuration plus resolved state into one launch request.

    The temporary key pair wins over ``ssh_keypair_id``; a password is only
    sent when no key is bound.
    """
    config = state.config
    run = config.run

    key_ids: tuple[str, ...] = ()
    if state.temporary_key_id:
        key_ids = (state.temporary_key_id,)
    elif run.ssh_keypair_id:
        key_ids = (run.ssh_keypair_id,)

    return LaunchRequest(
        image_id=state.require_source_image().image_id,
        instance_type=run.instance_type,
        instance_name=instance_name,
        zone=run.availability_zone,
        project_id=config.auth.project_id,
        instance_charge_type=run.instance_charge_type,
        system_disk_type=run.system_disk_type,
        system_disk_size=run.system_disk_size,
        vpc_id=run.vpc_id,
        subnet_id=run.subnet_id,
        internet_charge_type=run.internet_charge_type,
        internet_max_bandwidth_out=run.internet_max_bandwidth_out,
        public_ip_assigned=run.public_ip_assigned,
        security_group_ids=run.security_group_ids,
        key_ids=key_ids,
        password="" if key_ids else config.comm.ssh_password,
        user_data=encode_user_data(user_data),
    )


class RunInstance:
    """Launches one instance and waits until it is RUNNING.

    Cleanup disassociates the temporary key, terminates the instance and
    waits for it to disappear. Each of those is best-effort on its own.
    """

    name = "run-instance"

    def __init__(self) -> None:
        self._instance_id = ""

    def run(self, state: BuildState) -> StepAction:
        ui = state.ui
        client = state.client

        request = build_launch_request(state, temporary_name(), read_user_data(state.config))

        ui.say("launching source instance")
        instance_ids = client.run_instances(request)
        if not instance_ids:
            return state.halt(StepError("unknown error launching source instance"))

        instance_id = instance_ids[0]
        self._instance_id = instance_id
        state.key_associated = bool(state.temporary_key_id)
        ui.message(f"spawned instance ID: {instance_id}")
        ui.message(f"spawned instance name: {request.instance_name}")

        ui.say(f"waiting for instance '{instance_id}' to become ready...")
        wait_for_state(
            StateChange(
                target=InstanceState.RUNNING,
                pending=(InstanceState.PENDING,),
                refresh=instance_state_refresh(client, instance_id),
                cancellation=state.cancellation,
            )
        )

        instances = client.describe_instances([instance_id])
        if not instances:
            raise ResourceNotFoundError(f"could not query for spawned instance '{instance_id}'")

        instance = instances[0]
        if instance.private_ip:
            ui.message(f"Private IP: {instance.private_ip}")
        if instance.public_ip:
            ui.message(f"Public IP: {instance.public_ip}")

        state.instance = instance
        return StepAction.CONTINUE

    def cleanup(self, state: BuildState) -> None:
        if not self._instance_id:
            return

        instance_id = self._instance_id
        client = state.client
        ui = state.ui

        key_id = state.temporary_key_id
        if key_id and state.key_associated:

            def disassociate() -> bool:
                ui.say(f"disassociating key '{key_id}' from instance '{instance_id}' before termination")
                try:
                    client.disassociate_key_pairs([instance_id], [key_id], force_stop=True)
                except CloudAPIError as e:
                    ui.error(f"could not disassociate key from instance: {e}")
                    return False
                return True

            try:
                retry(disassociate)
            except CvmForgeError as e:
                state.cleanup_failed(f"could not disassociate key: {e}", e)
            else:
                state.key_associated = False

        def terminate() -> bool:
            ui.say(f"trying to terminate source instance '{instance_id}'")
            try:
                client.terminate_instances([instance_id])
            except CloudAPIError as e:
                log.warning("Terminate {id} failed: {err}", id=instance_id, err=e)
                return False
            return True

        try:
            retry(terminate)
        except CvmForgeError as e:
            state.cleanup_failed(f"could not terminate instance: {e}", e)
            return

        ui.say(f"waiting for instance '{instance_id}' to cease existence...")
        try:
            wait_for_does_not_exist(
                StateChange(
                    target=InstanceState.TERMINATED,
                    pending=(InstanceState.TERMINATING,),
                    refresh=instance_state_refresh(client, instance_id),
                )
            )
        except CvmForgeError as e:
            state.cleanup_failed(
                f"error waiting for instance '{instance_id}' to cease existence: {e}", e
            )
            return

        self._instance_id = ""
