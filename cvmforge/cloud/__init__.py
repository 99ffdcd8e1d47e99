"""Cloud control-plane collaborators.

The build core only depends on the ``CloudClient`` protocol; the Tencent
Cloud implementation lives in ``cvmforge.cloud.tencent``.
"""

from cvmforge.cloud.types import (
    CloudClient,
    Filters,
    Image,
    ImagePage,
    Instance,
    KeyPair,
    LaunchRequest,
    private_images_named,
)

__all__ = [
    "CloudClient",
    "Filters",
    "Image",
    "ImagePage",
    "Instance",
    "KeyPair",
    "LaunchRequest",
    "private_images_named",
]
