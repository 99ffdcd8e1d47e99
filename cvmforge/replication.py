"""Cross-region replication of a freshly created image.

One batched copy call is issued for every destination region; each region is
then handled independently. A copy first has to appear in the region's
private image listing under its final identifier, then it has to finish
syncing. Failures are collected per region so one slow region never hides
what happened in the others.

The "appear" check uses a small fixed number of lookups with a fixed sleep
rather than the shared poller: a copy that has not shown up after a few
seconds is reported as missing instead of being waited on for the full poll
budget.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import TYPE_CHECKING

from loguru import logger

from cvmforge.cloud.types import private_images_named
from cvmforge.constants import (
    PLACEHOLDER_IMAGE_ID,
    REGION_LOOKUP_ATTEMPTS,
    REGION_LOOKUP_DELAY,
    ImageState,
)
from cvmforge.exceptions import (
    BuildCancelledError,
    CloudAPIError,
    CvmForgeError,
    RegionError,
    ReplicationError,
    ReplicationKickoffError,
)
from cvmforge.polling import StateChange, image_state_refresh, wait_for_state
from cvmforge.state import Cancellation

if TYPE_CHECKING:
    from cvmforge.cloud.types import CloudClient
    from cvmforge.polling import PollSettings

log = logger.bind(component="replication")


def destination_regions(home_region: str, regions: Iterable[str]) -> list[str]:
    """Target regions in declared order, without the home region or repeats."""
    seen = {home_region}
    targets: list[str] = []
    for region in regions:
        if region in seen:
            log.debug("Skipping duplicate region {region}", region=region)
            continue
        seen.add(region)
        targets.append(region)
    return targets


def find_copy(
    client: CloudClient,
    image_name: str,
    cancellation: Cancellation,
    *,
    attempts: int = REGION_LOOKUP_ATTEMPTS,
    delay: float = REGION_LOOKUP_DELAY,
) -> str:
    """Look up the identifier of a copied image in ``client``'s region.

    A candidate only counts once the provider has assigned it a real
    identifier and its name matches exactly.

    Raises:
        RegionError: no usable candidate after ``attempts`` lookups, or the
            listing call failed.
        BuildCancelledError: the build was cancelled between lookups.
    """
    filters = private_images_named(image_name)
    for attempt in range(1, attempts + 1):
        try:
            page = client.describe_images(filters=filters, limit=1)
        except CloudAPIError as e:
            raise RegionError(client.region, e) from e

        for image in page.images:
            if image.image_id != PLACEHOLDER_IMAGE_ID and image.name == image_name:
                log.debug(
                    "Found copy {id} in {region} on attempt {n}",
                    id=image.image_id,
                    region=client.region,
                    n=attempt,
                )
                return image.image_id

        cancellation.raise_if_set()
        cancellation.wait(delay)
        cancellation.raise_if_set()

    raise RegionError(client.region, "could not find image copy")


def replicate_image(
    client: CloudClient,
    image_id: str,
    image_name: str,
    home_region: str,
    regions: Sequence[str],
    cancellation: Cancellation | None = None,
    *,
    lookup_attempts: int = REGION_LOOKUP_ATTEMPTS,
    lookup_delay: float = REGION_LOOKUP_DELAY,
    settings: PollSettings | None = None,
    discovered: dict[str, str] | None = None,
) -> dict[str, str]:
    """Copy ``image_id`` to ``regions`` and wait until every copy is usable.

    ``discovered``, when given, is filled with every copy identifier found,
    including those whose sync later failed, so the caller can clean up.

    Returns:
        The complete region -> image id map, home region included.

    Raises:
        ReplicationKickoffError: the batched copy call was rejected.
        ReplicationError: one or more regions failed; carries the copies that
            were resolved.
        BuildCancelledError: the build was cancelled.
    """
    latch = cancellation or Cancellation()
    found = discovered if discovered is not None else {}
    images = {home_region: image_id}

    targets = destination_regions(home_region, regions)
    if not targets:
        log.info("No additional regions to copy image to")
        return images

    log.info("Copying image {id} to {regions}", id=image_id, regions=", ".join(targets))
    try:
        client.sync_images([image_id], targets)
    except CloudAPIError as e:
        raise ReplicationKickoffError(f"could not copy image to specified regions: {e}") from e

    errors: list[BaseException] = []

    for region in targets:
        regional = client.in_region(region)
        try:
            found[region] = find_copy(
                regional,
                image_name,
                latch,
                attempts=lookup_attempts,
                delay=lookup_delay,
            )
        except RegionError as e:
            log.warning("{err}", err=e)
            errors.append(e)

    for region, copy_id in found.items():
        regional = client.in_region(region)
        conf = StateChange(
            target=ImageState.NORMAL,
            pending=(ImageState.SYNCING,),
            refresh=image_state_refresh(regional, copy_id),
            cancellation=latch,
        )
        try:
            wait_for_state(conf, settings)
        except BuildCancelledError:
            raise
        except CvmForgeError as e:
            log.warning("Copy {id} in {region} did not become ready: {err}", id=copy_id, region=region, err=e)
            errors.append(RegionError(region, f"error waiting for image copy '{copy_id}': {e}"))
            continue
        images[region] = copy_id

    if errors:
        raise ReplicationError(errors, found)
    return images
