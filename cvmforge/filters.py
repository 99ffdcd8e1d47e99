"""Source image discovery from declarative filters.

Besides the provider's own listing filters, images can be matched on tags
encoded in their free-text description, e.g. ``os=ubuntu;env=prod`` with
``;`` as the delimiter.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from loguru import logger

from cvmforge.constants import IMAGE_PAGE_SIZE
from cvmforge.exceptions import (
    AmbiguousImageError,
    ConfigError,
    ImageResolutionError,
    NoMatchingImageError,
)

if TYPE_CHECKING:
    from cvmforge.cloud.types import CloudClient, Image

log = logger.bind(component="filters")

_FILTER_KEYS = frozenset({"filters", "tag_filters", "tag_filter_delimiter", "most_recent"})


@dataclass(frozen=True, slots=True)
class ImageFilter:
    """Filters used to discover a source image.

    Args:
        filters: Provider listing filters, name -> value.
        tag_filters: Tags that must appear in the image description.
        tag_filter_delimiter: Separator between tags in the description.
        most_recent: Pick the newest image when several match.
    """

    filters: Mapping[str, str] = field(default_factory=dict)
    tag_filters: Mapping[str, str] = field(default_factory=dict)
    tag_filter_delimiter: str = ""
    most_recent: bool = False

    @property
    def empty(self) -> bool:
        return not self.filters and not self.tag_filters

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any], errors: list[str] | None = None) -> ImageFilter:
        """Build a filter from its config section.

        Unknown keys are appended to ``errors``; without an ``errors`` list
        they raise ``ConfigError`` directly.
        """
        unknown = [
            f"unknown key '{key}' in [source_image_filter]" for key in raw if key not in _FILTER_KEYS
        ]
        if unknown:
            if errors is None:
                raise ConfigError(unknown)
            errors.extend(unknown)
        return cls(
            filters=dict(raw.get("filters") or {}),
            tag_filters=dict(raw.get("tag_filters") or {}),
            tag_filter_delimiter=raw.get("tag_filter_delimiter") or "",
            most_recent=bool(raw.get("most_recent", False)),
        )

    def listing_filters(self) -> dict[str, list[str]]:
        return {name: [value] for name, value in self.filters.items()}

    def matches_description(self, description: str) -> bool:
        """True when every requested tag is present with the same value.

        Extra tags on the image are ignored.
        """
        tags = parse_description_tags(description, self.tag_filter_delimiter)
        if not tags:
            return False
        return all(tags.get(k) == v for k, v in self.tag_filters.items())


def parse_description_tags(description: str, delimiter: str) -> dict[str, str]:
    """Split ``description`` into ``key=value`` tags.

    Entries that do not split into exactly two parts are skipped.
    """
    entries = description.split(delimiter) if delimiter else [description]
    tags: dict[str, str] = {}
    for entry in entries:
        if not entry:
            continue
        parts = entry.split("=")
        if len(parts) != 2:
            continue
        tags[parts[0]] = parts[1]
    return tags


def _created_at(image: Image) -> datetime:
    try:
        created = datetime.fromisoformat(image.created_time)
    except ValueError as e:
        raise ImageResolutionError(
            f"getting image ({image.name}) created time: {image.created_time!r}"
        ) from e
    return created if created.tzinfo else created.replace(tzinfo=UTC)


def select_image(candidates: Iterable[Image], most_recent: bool) -> Image:
    """Pick exactly one image.

    With ``most_recent``, the newest creation time wins; on exactly equal
    timestamps the first candidate seen is kept.
    """
    images = list(candidates)
    log.debug("Found {n} images", n=len(images))

    if not images:
        raise NoMatchingImageError()

    if len(images) == 1:
        return images[0]

    if not most_recent:
        raise AmbiguousImageError(len(images))

    latest = images[0]
    latest_time = _created_at(latest)
    for image in images[1:]:
        created = _created_at(image)
        if created > latest_time:
            latest, latest_time = image, created
    return latest


def find_image(client: CloudClient, image_filter: ImageFilter) -> Image:
    """Page through the image listing and resolve ``image_filter`` to one image."""
    candidates: list[Image] = []
    listing = image_filter.listing_filters()
    offset = 0

    while True:
        page = client.describe_images(filters=listing, offset=offset, limit=IMAGE_PAGE_SIZE)
        if page.total_count == 0 or not page.images:
            break

        if not image_filter.tag_filters:
            candidates.extend(page.images)
        else:
            candidates.extend(
                image
                for image in page.images
                if image.description and image_filter.matches_description(image.description)
            )

        offset += IMAGE_PAGE_SIZE
        if offset >= page.total_count:
            break

    image = select_image(candidates, image_filter.most_recent)
    log.info("Using image {id}", id=image.image_id)
    return image
