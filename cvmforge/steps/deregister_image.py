"""Delete images that would collide with the one about to be built."""

from __future__ import annotations

from typing import TYPE_CHECKING

from cvmforge.cloud.types import private_images_named
from cvmforge.exceptions import CloudAPIError, StepError
from cvmforge.pipeline import StepAction

if TYPE_CHECKING:
    from cvmforge.state import BuildState


class DeregisterImage:
    """With force_deregister, removes same-named private images everywhere.

    The home region is checked along with every target region. Any listing
    or deletion error halts the build.
    """

    name = "deregister-image"

    def run(self, state: BuildState) -> StepAction:
        image = state.config.image
        if not image.force_deregister:
            return StepAction.CONTINUE

        name = image.image_name
        regions = dict.fromkeys([*image.image_regions, state.config.auth.region])

        for region in regions:
            regional = state.client.in_region(region)
            try:
                page = regional.describe_images(filters=private_images_named(name))
            except CloudAPIError as e:
                raise StepError(f"could not query image '{name}' in region '{region}': {e}") from e

            for existing in page.images:
                try:
                    regional.delete_images([existing.image_id])
                except CloudAPIError as e:
                    raise StepError(
                        f"could not delete image '{name}' in region '{region}': {e}"
                    ) from e
                state.ui.say(
                    f"deleted image '{name}' (ID '{existing.image_id}') from region '{region}'"
                )

        return StepAction.CONTINUE

    def cleanup(self, state: BuildState) -> None:
        pass
