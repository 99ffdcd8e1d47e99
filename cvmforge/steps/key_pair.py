"""SSH key material for the build instance."""

from __future__ import annotations

import os
from pathlib import Path
from typing import TYPE_CHECKING

from cvmforge.exceptions import CloudAPIError, CommunicatorError, CvmForgeError
from cvmforge.pipeline import StepAction
from cvmforge.retry import retry
from cvmforge.state import KeyMaterial

if TYPE_CHECKING:
    from cvmforge.state import BuildState


def write_private_key(path: Path, private_key: str) -> None:
    """Write key material readable by the owner only."""
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write(private_key)
    path.chmod(0o600)


class KeyPair:
    """Loads a caller key, uses none, or creates a temporary key pair.

    Only a temporary key pair created here is deleted on cleanup; a
    caller-supplied key is never touched.
    """

    name = "key-pair"

    def __init__(self) -> None:
        self._created_key_id = ""
        self._created_key_name = ""
        self._debug_path: Path | None = None

    def run(self, state: BuildState) -> StepAction:
        config = state.config
        ui = state.ui

        if config.comm.ssh_private_key_file:
            ui.say("using provided private key for SSH")
            try:
                private_key = Path(config.comm.ssh_private_key_file).read_text()
            except OSError as e:
                raise CommunicatorError(f"could not load private key for SSH: {e}") from e
            state.key_pair = KeyMaterial(key_name=config.run.ssh_keypair_id, private_key=private_key)
            return StepAction.CONTINUE

        name = config.run.temporary_key_pair_name
        if not name:
            ui.say("no SSH keypair is being used")
            state.key_pair = KeyMaterial(key_name=config.run.ssh_keypair_id)
            return StepAction.CONTINUE

        ui.say(f"creating temporary keypair '{name}'")
        key = state.client.create_key_pair(name, config.auth.project_id)
        self._created_key_id = key.key_id
        self._created_key_name = name
        state.key_pair = KeyMaterial(key_name=name, private_key=key.private_key, key_id=key.key_id)

        if config.debug:
            path = config.debug_key_path
            ui.message(f"saving private key for '{name}' to '{path}'")
            self._debug_path = path
            try:
                write_private_key(path, key.private_key)
            except OSError as e:
                raise CommunicatorError(f"could not save private key to disk: {e}") from e

        return StepAction.CONTINUE

    def cleanup(self, state: BuildState) -> None:
        ui = state.ui

        if self._created_key_id:
            key_id = self._created_key_id

            def delete() -> bool:
                ui.say(f"removing temporary keypair '{self._created_key_name}' (ID '{key_id}')")
                try:
                    state.client.delete_key_pairs([key_id])
                except CloudAPIError as e:
                    ui.error(f"could not delete temporary keypair: {e}")
                    return False
                return True

            try:
                retry(delete)
            except CvmForgeError as e:
                state.cleanup_failed(f"could not delete temporary keypair '{key_id}': {e}", e)
            else:
                self._created_key_id = ""

        if self._debug_path is not None:
            try:
                self._debug_path.unlink(missing_ok=True)
            except OSError as e:
                state.cleanup_failed(f"could not remove private key from disk: {e}", e)
            self._debug_path = None
