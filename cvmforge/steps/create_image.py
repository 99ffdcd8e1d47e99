"""Snapshot the stopped instance into a private image."""

from __future__ import annotations

from typing import TYPE_CHECKING

from loguru import logger

from cvmforge.constants import ImageState
from cvmforge.exceptions import CloudAPIError, RetryExhaustedError, StepError
from cvmforge.pipeline import StepAction
from cvmforge.polling import (
    StateChange,
    image_exists_refresh,
    image_state_refresh,
    wait_for_exists,
    wait_for_state,
)
from cvmforge.retry import retry

if TYPE_CHECKING:
    from cvmforge.state import BuildState

log = logger.bind(component="steps")

_CREATING = (ImageState.SYNCING, ImageState.PENDING)


class CreateImage:
    """Creates the image in the home region and waits until it is NORMAL.

    The image only outlives a failed or cancelled build if its id was never
    learned; cleanup then looks it up by name once.
    """

    name = "create-image"

    def __init__(self) -> None:
        self._requested = False
        self._image_id = ""

    def run(self, state: BuildState) -> StepAction:
        config = state.config
        client = state.client
        ui = state.ui
        instance_id = state.require_instance().instance_id
        image_name = config.image.image_name

        def create() -> bool:
            ui.say(f"creating image '{image_name}'")
            try:
                image_id = client.create_image(
                    instance_id, image_name, config.image.image_description
                )
            except CloudAPIError as e:
                ui.error(f"error creating image: {e}")
                return False
            log.debug("CreateImage accepted, reported id {id}", id=image_id)
            return True

        try:
            retry(create, cancellation=state.cancellation)
        except RetryExhaustedError as e:
            raise StepError(f"error creating image: {e}") from e
        self._requested = True

        image = wait_for_exists(
            StateChange(
                target=ImageState.NORMAL,
                pending=_CREATING,
                refresh=image_exists_refresh(client, image_name),
                cancellation=state.cancellation,
            )
        )
        self._image_id = image.image_id
        ui.message(f"image ID: {image.image_id}")
        state.images = {config.auth.region: image.image_id}

        ui.say("waiting for image to become ready")
        wait_for_state(
            StateChange(
                target=ImageState.NORMAL,
                pending=_CREATING,
                refresh=image_state_refresh(client, image.image_id),
                cancellation=state.cancellation,
            )
        )
        return StepAction.CONTINUE

    def cleanup(self, state: BuildState) -> None:
        if not self._requested or not state.unwinding:
            return

        image_id = self._image_id
        if not image_id:
            image, _ = image_exists_refresh(state.client, state.config.image.image_name)()
            if image is None:
                return
            image_id = image.image_id

        state.ui.say(f"deleting image '{image_id}' because of cancellation or failure")
        try:
            state.client.delete_images([image_id])
        except CloudAPIError as e:
            state.cleanup_failed(f"could not delete image: {e}", e)
            return
        self._image_id = ""
        self._requested = False
