"""Replicate the finished image to the configured regions."""

from __future__ import annotations

from typing import TYPE_CHECKING

from cvmforge.constants import REGION_LOOKUP_ATTEMPTS, REGION_LOOKUP_DELAY
from cvmforge.exceptions import CloudAPIError, StepError
from cvmforge.pipeline import StepAction
from cvmforge.replication import destination_regions, replicate_image

if TYPE_CHECKING:
    from cvmforge.polling import PollSettings
    from cvmforge.state import BuildState


class ImageRegionCopy:
    """Runs the replication coordinator and publishes the final image map.

    ``state.images`` is only replaced on full success. Copies discovered
    before a failure or cancellation are deleted on cleanup.
    """

    name = "image-region-copy"

    def __init__(
        self,
        lookup_attempts: int = REGION_LOOKUP_ATTEMPTS,
        lookup_delay: float = REGION_LOOKUP_DELAY,
        settings: PollSettings | None = None,
    ) -> None:
        self._lookup_attempts = lookup_attempts
        self._lookup_delay = lookup_delay
        self._settings = settings
        self._copies: dict[str, str] = {}

    def run(self, state: BuildState) -> StepAction:
        config = state.config
        ui = state.ui
        home = config.auth.region

        image_id = (state.images or {}).get(home)
        if not image_id:
            return state.halt(StepError(f"no image was recorded for home region '{home}'"))

        targets = destination_regions(home, config.image.image_regions)
        if not targets:
            ui.message("no additional regions to copy image to")
            return StepAction.CONTINUE

        ui.say(f"copying built image artifact '{image_id}' to other regions")
        for region in targets:
            ui.message(f"adding region '{region}' to copy list")

        images = replicate_image(
            state.client,
            image_id,
            config.image.image_name,
            home,
            targets,
            state.cancellation,
            lookup_attempts=self._lookup_attempts,
            lookup_delay=self._lookup_delay,
            settings=self._settings,
            discovered=self._copies,
        )
        state.images = images
        return StepAction.CONTINUE

    def cleanup(self, state: BuildState) -> None:
        if not self._copies or not state.unwinding:
            return

        for region, copy_id in sorted(self._copies.items()):
            state.ui.say(f"deleting image copy '{copy_id}' from region '{region}'")
            try:
                state.client.in_region(region).delete_images([copy_id])
            except CloudAPIError as e:
                state.cleanup_failed(f"could not delete image copy in region '{region}': {e}", e)
        self._copies = {}
