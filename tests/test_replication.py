from __future__ import annotations

import pytest

from cvmforge.cloud.types import Image
from cvmforge.constants import PLACEHOLDER_IMAGE_ID, PRIVATE_IMAGE, REGION_LOOKUP_ATTEMPTS
from cvmforge.exceptions import (
    BuildCancelledError,
    RegionError,
    ReplicationError,
    ReplicationKickoffError,
)
from cvmforge.polling import PollSettings
from cvmforge.replication import destination_regions, find_copy, replicate_image
from cvmforge.state import Cancellation
from tests.conftest import HOME, FakeCloud, World, api_error

pytestmark = [pytest.mark.xdist_group("unit")]

FAST = PollSettings(timeout=4, interval=2)


@pytest.fixture
def source(world: World) -> str:
    world.add_image(
        HOME,
        Image(image_id="img-home", name="web-base", state="NORMAL", image_type=PRIVATE_IMAGE),
    )
    return "img-home"


def lookups_in(world: World, region: str) -> int:
    return sum(1 for r, _ in world.actions("describe_images") if r == region)


class TestDestinationRegions:
    def test_skips_home_and_duplicates(self):
        assert destination_regions("a", ["b", "a", "b", "c"]) == ["b", "c"]

    def test_only_home(self):
        assert destination_regions("a", ["a"]) == []


class TestFindCopy:
    def test_placeholder_id_is_never_accepted(self, world: World):
        world.add_image("r1", Image(image_id=PLACEHOLDER_IMAGE_ID, name="web-base", image_type=PRIVATE_IMAGE))

        with pytest.raises(RegionError, match="could not find image copy"):
            find_copy(FakeCloud("r1", world), "web-base", Cancellation(), attempts=3)
        assert lookups_in(world, "r1") == 3

    def test_listing_error_fails_region(self, world: World):
        world.fail("describe_images", api_error("DescribeImages"))

        with pytest.raises(RegionError, match="region 'r1'"):
            find_copy(FakeCloud("r1", world), "web-base", Cancellation())
        assert lookups_in(world, "r1") == 1

    def test_cancelled_between_lookups(self, world: World):
        latch = Cancellation()
        latch.cancel()

        with pytest.raises(BuildCancelledError):
            find_copy(FakeCloud("r1", world), "web-base", latch)


class TestReplicateImage:
    def test_no_targets_is_trivial(self, cloud: FakeCloud, world: World, source: str):
        images = replicate_image(cloud, source, "web-base", HOME, [HOME])

        assert images == {HOME: source}
        assert world.actions("sync_images") == []

    def test_all_regions_succeed(self, cloud: FakeCloud, world: World, source: str):
        world.copy_delays = {"ap-shanghai": 2}

        images = replicate_image(
            cloud, source, "web-base", HOME, ["ap-shanghai", "ap-beijing", HOME], settings=FAST
        )

        assert set(images) == {HOME, "ap-shanghai", "ap-beijing"}
        assert images[HOME] == source
        assert all(v.startswith("img-") and v != source for k, v in images.items() if k != HOME)
        assert world.actions("sync_images") == [(HOME, ((source,), ("ap-shanghai", "ap-beijing")))]
        assert lookups_in(world, "ap-shanghai") >= 3

    def test_partial_failure_reports_missing_region_and_keeps_found_ids(
        self, cloud: FakeCloud, world: World, source: str
    ):
        world.copy_delays = {"region-a": 1, "region-b": None}
        discovered: dict[str, str] = {}

        with pytest.raises(ReplicationError) as exc:
            replicate_image(
                cloud,
                source,
                "web-base",
                HOME,
                ["region-a", "region-b"],
                settings=FAST,
                discovered=discovered,
            )

        error = exc.value
        assert [e.region for e in error.errors] == ["region-b"]
        assert "region-b" in str(error)
        assert set(error.resolved) == {"region-a"}
        assert error.resolved["region-a"] in str(error)
        assert discovered == error.resolved
        assert lookups_in(world, "region-b") == REGION_LOOKUP_ATTEMPTS

    def test_region_that_never_syncs_is_reported(self, cloud: FakeCloud, world: World, source: str):
        world.copy_state = "CREATEFAILED"

        with pytest.raises(ReplicationError) as exc:
            replicate_image(cloud, source, "web-base", HOME, ["ap-shanghai"], settings=FAST)

        assert "ap-shanghai" in str(exc.value)
        assert "unexpected state 'CREATEFAILED'" in str(exc.value)

    def test_kickoff_failure(self, cloud: FakeCloud, world: World, source: str):
        world.fail("sync_images", api_error("SyncImages"))

        with pytest.raises(ReplicationKickoffError, match="could not copy image"):
            replicate_image(cloud, source, "web-base", HOME, ["ap-shanghai"])

    def test_cancellation_propagates(self, cloud: FakeCloud, world: World, source: str):
        world.copy_delays = {"ap-shanghai": None}
        latch = Cancellation()
        latch.cancel()

        with pytest.raises(BuildCancelledError):
            replicate_image(cloud, source, "web-base", HOME, ["ap-shanghai"], latch)
