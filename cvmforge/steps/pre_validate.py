"""Configuration sanity checks that only warn."""

from __future__ import annotations

from typing import TYPE_CHECKING

from cvmforge.pipeline import StepAction

if TYPE_CHECKING:
    from cvmforge.state import BuildState


class PreValidate:
    name = "pre-validate"

    def run(self, state: BuildState) -> StepAction:
        image = state.config.image
        if image.force_deregister:
            state.ui.say(
                f"force_deregister is set, will delete existing image '{image.image_name}' if present"
            )
        if not image.image_regions:
            state.ui.message("no image_regions configured, image stays in the home region")
        return StepAction.CONTINUE

    def cleanup(self, state: BuildState) -> None:
        pass
