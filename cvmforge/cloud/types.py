"""Cloud resource types and the client protocol the build core depends on."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from cvmforge.constants import PRIVATE_IMAGE

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

type Filters = Mapping[str, Sequence[str]]


@dataclass(frozen=True, slots=True)
class Image:
    """A machine image as reported by the control plane."""

    image_id: str
    name: str = ""
    state: str = ""
    description: str = ""
    created_time: str = ""
    image_type: str = ""


@dataclass(frozen=True, slots=True)
class ImagePage:
    """One page of an image listing."""

    images: tuple[Image, ...]
    total_count: int


@dataclass(frozen=True, slots=True)
class Instance:
    """A compute instance and its assigned addresses."""

    instance_id: str
    state: str = ""
    name: str = ""
    private_ips: tuple[str, ...] = ()
    public_ips: tuple[str, ...] = ()

    @property
    def private_ip(self) -> str | None:
        return self.private_ips[0] if self.private_ips else None

    @property
    def public_ip(self) -> str | None:
        return self.public_ips[0] if self.public_ips else None


@dataclass(frozen=True, slots=True)
class KeyPair:
    """A remotely generated key pair; private_key is only known at creation."""

    key_id: str
    name: str
    private_key: str = ""


@dataclass(frozen=True, slots=True)
class LaunchRequest:
    """Everything needed to launch the single build instance."""

    image_id: str
    instance_type: str
    instance_name: str
    zone: str = ""
    project_id: int = 0
    instance_charge_type: str = ""
    system_disk_type: str = ""
    system_disk_size: int = 0
    vpc_id: str = ""
    subnet_id: str = ""
    internet_charge_type: str = ""
    internet_max_bandwidth_out: int = 0
    public_ip_assigned: bool = False
    security_group_ids: tuple[str, ...] = ()
    key_ids: tuple[str, ...] = ()
    password: str = ""
    user_data: str = ""


@runtime_checkable
class CloudClient(Protocol):
    """Control-plane operations used by the build steps.

    Every method raises ``CloudAPIError`` on failure. ``in_region`` returns
    an independent client bound to another region; copies share no mutable
    state.
    """

    @property
    def region(self) -> str: ...

    def in_region(self, region: str) -> CloudClient: ...

    def describe_images(
        self,
        *,
        image_ids: Sequence[str] = (),
        filters: Filters | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> ImagePage: ...

    def create_image(self, instance_id: str, name: str, description: str = "") -> str | None: ...

    def delete_images(self, image_ids: Sequence[str]) -> None: ...

    def sync_images(self, image_ids: Sequence[str], regions: Sequence[str]) -> None: ...

    def describe_instances(self, instance_ids: Sequence[str]) -> list[Instance]: ...

    def run_instances(self, request: LaunchRequest) -> list[str]: ...

    def stop_instances(self, instance_ids: Sequence[str]) -> None: ...

    def terminate_instances(self, instance_ids: Sequence[str]) -> None: ...

    def create_key_pair(self, name: str, project_id: int = 0) -> KeyPair: ...

    def delete_key_pairs(self, key_ids: Sequence[str]) -> None: ...

    def disassociate_key_pairs(
        self,
        instance_ids: Sequence[str],
        key_ids: Sequence[str],
        *,
        force_stop: bool = True,
    ) -> None: ...


def private_images_named(name: str) -> dict[str, list[str]]:
    """Listing filter for private images carrying an exact name."""
    return {"image-type": [PRIVATE_IMAGE], "image-name": [name]}
