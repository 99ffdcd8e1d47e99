"""The build result: one image per region."""

from __future__ import annotations

from collections.abc import Mapping
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from loguru import logger

from cvmforge.constants import BUILDER_ID
from cvmforge.exceptions import CloudAPIError, MultiError, RegionError

if TYPE_CHECKING:
    from cvmforge.cloud.types import CloudClient

log = logger.bind(component="artifact")

ATLAS_METADATA = "atlas.artifact.metadata"


class Artifact:
    """Region -> image id map produced by a successful build.

    Rendering is sorted, so ``id`` and ``str()`` do not depend on the order
    in which regions were filled in.
    """

    __slots__ = ("_builder_id", "_client", "_images")

    def __init__(
        self,
        images: Mapping[str, str],
        client: CloudClient,
        builder_id: str = BUILDER_ID,
    ) -> None:
        self._images = dict(images)
        self._client = client
        self._builder_id = builder_id

    @property
    def builder_id(self) -> str:
        return self._builder_id

    @property
    def images(self) -> Mapping[str, str]:
        return MappingProxyType(self._images)

    @property
    def id(self) -> str:
        return ",".join(sorted(f"{region}:{image}" for region, image in self._images.items()))

    def __str__(self) -> str:
        lines = "\n".join(sorted(f"{region}: {image}" for region, image in self._images.items()))
        return f"Images were created:\n{lines}\n"

    def __repr__(self) -> str:
        return f"Artifact(id={self.id!r}, builder_id={self._builder_id!r})"

    def files(self) -> tuple[str, ...]:
        return ()

    def state(self, name: str) -> Any:
        if name == ATLAS_METADATA:
            return {f"region.{region}": image for region, image in self._images.items()}
        return None

    def destroy(self) -> BaseException | None:
        """Delete every region's image.

        Every region is attempted even when an earlier one fails.

        Returns:
            None when all deletions succeeded, the single failure when
            exactly one region failed, otherwise a MultiError.
        """
        errors: list[BaseException] = []
        for region, image_id in sorted(self._images.items()):
            log.info("Deleting image {id} from region {region}", id=image_id, region=region)
            try:
                self._client.in_region(region).delete_images([image_id])
            except CloudAPIError as e:
                log.warning("Deleting {id} in {region} failed: {err}", id=image_id, region=region, err=e)
                errors.append(RegionError(region, e))

        match errors:
            case []:
                return None
            case [error]:
                return error
            case _:
                return MultiError(errors)
