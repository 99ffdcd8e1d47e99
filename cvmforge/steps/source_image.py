"""Resolve the image the build instance boots from."""

from __future__ import annotations

from typing import TYPE_CHECKING

from loguru import logger

from cvmforge.exceptions import NoMatchingImageError
from cvmforge.filters import find_image
from cvmforge.pipeline import StepAction

if TYPE_CHECKING:
    from cvmforge.state import BuildState

log = logger.bind(component="steps")


class SourceImageInfo:
    """Looks the source image up by id, or discovers it from filters."""

    name = "source-image"

    def run(self, state: BuildState) -> StepAction:
        config = state.config
        image_filter = config.source_image_filter

        if image_filter.empty:
            image_id = config.run.source_image_id
            page = state.client.describe_images(image_ids=[image_id])
            if not page.images:
                raise NoMatchingImageError(f"no image '{image_id}' was found")
            state.source_image = page.images[0]
            log.debug("Source image {id} ({name})", id=image_id, name=state.source_image.name)
            return StepAction.CONTINUE

        state.ui.say("discovering source image from filters")
        state.source_image = find_image(state.client, image_filter)
        state.ui.say(f"using discovered image id: {state.source_image.image_id}")
        return StepAction.CONTINUE

    def cleanup(self, state: BuildState) -> None:
        pass
