from __future__ import annotations

import itertools
import time
from collections.abc import Sequence
from dataclasses import dataclass, field, replace

import pytest

from cvmforge.cloud.types import Filters, Image, ImagePage, Instance, KeyPair, LaunchRequest
from cvmforge.config import AuthConfig, BuildConfig, CommConfig, ImageConfig, RunConfig
from cvmforge.constants import PRIVATE_IMAGE, ImageState, InstanceState
from cvmforge.exceptions import CloudAPIError
from cvmforge.state import BuildState, Cancellation
from cvmforge.ui import RecordingUi

HOME = "ap-guangzhou"


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch: pytest.MonkeyPatch) -> None:
    """Every wait in the build goes through one of these; make them instant."""
    monkeypatch.setattr(Cancellation, "wait", lambda self, seconds: self.is_set())
    monkeypatch.setattr(time, "sleep", lambda seconds: None)


def api_error(action: str = "Action", code: str = "InternalError") -> CloudAPIError:
    return CloudAPIError(action, code, "boom", request_id="req-1")


@dataclass
class World:
    """Control-plane state shared by every region-bound FakeCloud."""

    images: dict[str, dict[str, Image]] = field(default_factory=dict)
    instances: dict[str, Instance] = field(default_factory=dict)
    key_pairs: dict[str, KeyPair] = field(default_factory=dict)
    launches: list[LaunchRequest] = field(default_factory=list)
    calls: list[tuple[str, str, tuple]] = field(default_factory=list)
    failures: dict[str, list[BaseException]] = field(default_factory=dict)
    copy_delays: dict[str, int | None] = field(default_factory=dict)
    copy_state: str = ImageState.NORMAL
    hidden: dict[str, list[list]] = field(default_factory=dict)
    ids: itertools.count = field(default_factory=lambda: itertools.count(1))

    def fail(self, action: str, *errors: BaseException) -> None:
        self.failures.setdefault(action, []).extend(errors)

    def add_image(self, region: str, image: Image) -> Image:
        self.images.setdefault(region, {})[image.image_id] = image
        return image

    def actions(self, name: str) -> list[tuple[str, tuple]]:
        return [(region, args) for region, action, args in self.calls if action == name]

    def next_id(self, prefix: str) -> str:
        return f"{prefix}-{next(self.ids)}"


class FakeCloud:
    """In-memory CloudClient. Failures queued with ``world.fail`` are raised in order."""

    def __init__(self, region: str = HOME, world: World | None = None) -> None:
        self._region = region
        self.world = world or World()

    @property
    def region(self) -> str:
        return self._region

    def in_region(self, region: str) -> FakeCloud:
        return FakeCloud(region, self.world)

    def _call(self, action: str, *args: object) -> None:
        self.world.calls.append((self._region, action, args))
        queued = self.world.failures.get(action)
        if queued:
            raise queued.pop(0)

    @property
    def _images(self) -> dict[str, Image]:
        return self.world.images.setdefault(self._region, {})

    def describe_images(
        self,
        *,
        image_ids: Sequence[str] = (),
        filters: Filters | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> ImagePage:
        self._call("describe_images", tuple(image_ids), filters, offset, limit)
        matches = list(self._images.values())
        if image_ids:
            matches = [i for i in matches if i.image_id in image_ids]
        for name, values in (filters or {}).items():
            match name:
                case "image-name":
                    matches = [i for i in matches if i.name in values]
                case "image-type":
                    matches = [i for i in matches if i.image_type in values]
        self._reveal_copies()
        end = None if limit is None else offset + limit
        return ImagePage(images=tuple(matches[offset:end]), total_count=len(matches))

    def create_image(self, instance_id: str, name: str, description: str = "") -> str | None:
        self._call("create_image", instance_id, name, description)
        image = Image(
            image_id=self.world.next_id("img"),
            name=name,
            state=ImageState.NORMAL,
            description=description,
            created_time="2024-01-01T00:00:00Z",
            image_type=PRIVATE_IMAGE,
        )
        self._images[image.image_id] = image
        return image.image_id

    def delete_images(self, image_ids: Sequence[str]) -> None:
        self._call("delete_images", tuple(image_ids))
        for image_id in image_ids:
            self._images.pop(image_id, None)

    def sync_images(self, image_ids: Sequence[str], regions: Sequence[str]) -> None:
        """Copies appear after ``world.copy_delays[region]`` listings there (None: never)."""
        self._call("sync_images", tuple(image_ids), tuple(regions))
        for image_id in image_ids:
            source = self._images[image_id]
            for region in regions:
                copy = replace(source, image_id=self.world.next_id("img"), state=self.world.copy_state)
                delay = self.world.copy_delays.get(region, 0)
                if delay == 0:
                    self.world.add_image(region, copy)
                elif delay is not None:
                    self.world.hidden.setdefault(region, []).append([delay, copy])

    def _reveal_copies(self) -> None:
        waiting = self.world.hidden.get(self._region, [])
        for entry in list(waiting):
            entry[0] -= 1
            if entry[0] <= 0:
                waiting.remove(entry)
                self._images[entry[1].image_id] = entry[1]

    def describe_instances(self, instance_ids: Sequence[str]) -> list[Instance]:
        self._call("describe_instances", tuple(instance_ids))
        return [self.world.instances[i] for i in instance_ids if i in self.world.instances]

    def run_instances(self, request: LaunchRequest) -> list[str]:
        self._call("run_instances", request)
        self.world.launches.append(request)
        instance = Instance(
            instance_id=self.world.next_id("ins"),
            state=InstanceState.RUNNING,
            name=request.instance_name,
            private_ips=("10.0.0.2",),
            public_ips=("203.0.113.7",),
        )
        self.world.instances[instance.instance_id] = instance
        return [instance.instance_id]

    def stop_instances(self, instance_ids: Sequence[str]) -> None:
        self._call("stop_instances", tuple(instance_ids))
        for i in instance_ids:
            self.world.instances[i] = replace(self.world.instances[i], state=InstanceState.STOPPED)

    def terminate_instances(self, instance_ids: Sequence[str]) -> None:
        self._call("terminate_instances", tuple(instance_ids))
        for i in instance_ids:
            self.world.instances.pop(i, None)

    def create_key_pair(self, name: str, project_id: int = 0) -> KeyPair:
        self._call("create_key_pair", name, project_id)
        key = KeyPair(key_id=self.world.next_id("skey"), name=name, private_key="-----PRIVATE-----")
        self.world.key_pairs[key.key_id] = key
        return key

    def delete_key_pairs(self, key_ids: Sequence[str]) -> None:
        self._call("delete_key_pairs", tuple(key_ids))
        for key_id in key_ids:
            self.world.key_pairs.pop(key_id, None)

    def disassociate_key_pairs(
        self,
        instance_ids: Sequence[str],
        key_ids: Sequence[str],
        *,
        force_stop: bool = True,
    ) -> None:
        self._call("disassociate_key_pairs", tuple(instance_ids), tuple(key_ids), force_stop)


class FakeConnection:
    def __init__(self, outputs: dict[str, str] | None = None) -> None:
        self.outputs = outputs or {}
        self.commands: list[str] = []
        self.closed = False

    def exec(self, command: str, timeout: float | None = None) -> str:
        self.commands.append(command)
        return self.outputs.get(command, "")

    def close(self) -> None:
        self.closed = True


class RecordingConnector:
    def __init__(self, connection: FakeConnection | None = None) -> None:
        self.connection = connection or FakeConnection()
        self.configs: list = []

    def __call__(self, config, *, timeout: float, cancellation=None) -> FakeConnection:
        self.configs.append(config)
        return self.connection


def make_config(**sections: object) -> BuildConfig:
    """A prepared-looking config with a source image id and a temporary key."""
    config = BuildConfig(
        auth=AuthConfig(secret_id="AKIDtest", secret_key="s3cr3t", region=HOME),
        image=ImageConfig(image_name="web-base", image_regions=("ap-shanghai",)),
        run=RunConfig(
            source_image_id="img-source",
            instance_type="S5.MEDIUM2",
            subnet_id="subnet-1",
            temporary_key_pair_name="cvmforge_tmpkey",
        ),
        comm=CommConfig(),
        build_name="test",
    )
    return replace(config, **sections)


@pytest.fixture
def world() -> World:
    w = World()
    w.add_image(
        HOME,
        Image(image_id="img-source", name="ubuntu", state=ImageState.NORMAL, image_type="PUBLIC_IMAGE"),
    )
    return w


@pytest.fixture
def cloud(world: World) -> FakeCloud:
    return FakeCloud(HOME, world)


@pytest.fixture
def ui() -> RecordingUi:
    return RecordingUi()


@pytest.fixture
def config() -> BuildConfig:
    return make_config()


@pytest.fixture
def state(config: BuildConfig, cloud: FakeCloud, ui: RecordingUi) -> BuildState:
    return BuildState(config=config, client=cloud, ui=ui)
