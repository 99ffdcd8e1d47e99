from __future__ import annotations

import pytest

from cvmforge.cloud.types import Image, Instance
from cvmforge.constants import (
    DEFAULT_POLL_DELAY_SECONDS,
    DEFAULT_TIMEOUT_SECONDS,
    POLL_DELAY_ENV,
    TIMEOUT_ENV,
)
from cvmforge.exceptions import (
    BuildCancelledError,
    PollTimeoutError,
    ResourceNotFoundError,
    UnexpectedStateError,
)
from cvmforge.polling import (
    PollSettings,
    StateChange,
    image_exists_refresh,
    image_state_refresh,
    instance_state_refresh,
    wait_for_does_not_exist,
    wait_for_exists,
    wait_for_state,
)
from cvmforge.state import Cancellation
from tests.conftest import HOME, FakeCloud, World, api_error

pytestmark = [pytest.mark.xdist_group("unit")]

FAST = PollSettings(timeout=10, interval=2)  # 5 ticks


class Scripted:
    """Refresh function replaying a fixed list of responses."""

    def __init__(self, *responses, then=None) -> None:
        self._responses = list(responses)
        self._then = then
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self._responses:
            response = self._responses.pop(0)
        else:
            response = self._then
        if isinstance(response, BaseException):
            raise response
        return response


class TestPollSettings:
    def test_max_ticks_rounds_up(self):
        assert PollSettings(timeout=10, interval=3).max_ticks == 4

    def test_max_ticks_is_at_least_one(self):
        assert PollSettings(timeout=1, interval=5).max_ticks == 1

    def test_defaults_without_env(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.delenv(TIMEOUT_ENV, raising=False)
        monkeypatch.delenv(POLL_DELAY_ENV, raising=False)
        settings = PollSettings.from_env()
        assert settings.timeout == DEFAULT_TIMEOUT_SECONDS
        assert settings.interval == DEFAULT_POLL_DELAY_SECONDS

    def test_env_overrides(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv(TIMEOUT_ENV, "60")
        monkeypatch.setenv(POLL_DELAY_ENV, "0.5")
        assert PollSettings.from_env() == PollSettings(timeout=60, interval=0.5)

    @pytest.mark.parametrize("raw", ["abc", "-3", "0", "inf", "nan"])
    def test_invalid_override_falls_back_to_default(self, monkeypatch: pytest.MonkeyPatch, raw: str):
        monkeypatch.setenv(TIMEOUT_ENV, raw)
        monkeypatch.setenv(POLL_DELAY_ENV, raw)
        settings = PollSettings.from_env()
        assert settings.timeout == DEFAULT_TIMEOUT_SECONDS
        assert settings.interval == DEFAULT_POLL_DELAY_SECONDS


class TestWaitForState:
    def test_returns_after_pending_states(self):
        refresh = Scripted(("res", "PENDING"), ("res", "PENDING"), ("res", "READY"))
        conf = StateChange(target="READY", pending=("PENDING",), refresh=refresh)

        assert wait_for_state(conf, FAST) == "res"
        assert refresh.calls == 3

    def test_unknown_state_fails_without_further_refresh(self):
        refresh = Scripted(("res", "PENDING"), ("res", "UNKNOWN"), ("res", "READY"))
        conf = StateChange(target="READY", pending=("PENDING",), refresh=refresh)

        with pytest.raises(UnexpectedStateError, match="unexpected state 'UNKNOWN', wanted target 'READY'"):
            wait_for_state(conf, FAST)
        assert refresh.calls == 2

    def test_not_found_times_out_after_tick_budget(self):
        refresh = Scripted(then=(None, ""))
        conf = StateChange(target="READY", pending=("PENDING",), refresh=refresh)

        with pytest.raises(PollTimeoutError):
            wait_for_state(conf, PollSettings(timeout=10, interval=3))
        assert refresh.calls == 5

    def test_found_response_resets_not_found_counter(self):
        refresh = Scripted(
            (None, ""),
            (None, ""),
            ("res", "PENDING"),
            (None, ""),
            (None, ""),
            ("res", "READY"),
        )
        conf = StateChange(target="READY", pending=("PENDING",), refresh=refresh)

        assert wait_for_state(conf, PollSettings(timeout=4, interval=2)) == "res"
        assert refresh.calls == 6

    def test_cancellation_is_checked_every_iteration(self):
        latch = Cancellation()
        calls: list[int] = []

        def refresh():
            calls.append(1)
            if len(calls) == 2:
                latch.cancel()
            return "res", "PENDING"

        conf = StateChange(target="READY", pending=("PENDING",), refresh=refresh, cancellation=latch)

        with pytest.raises(BuildCancelledError):
            wait_for_state(conf, FAST)
        assert len(calls) == 2

    def test_refresh_error_propagates(self):
        refresh = Scripted(RuntimeError("api down"))
        conf = StateChange(target="READY", refresh=refresh)

        with pytest.raises(RuntimeError, match="api down"):
            wait_for_state(conf, FAST)


class TestWaitForExists:
    def test_returns_first_found_resource(self):
        refresh = Scripted((None, ""), (None, ""), ("res", "SYNCING"))
        conf = StateChange(target="NORMAL", pending=("SYNCING",), refresh=refresh)

        assert wait_for_exists(conf, FAST) == "res"
        assert refresh.calls == 3

    def test_refresh_error_is_not_found(self):
        conf = StateChange(target="NORMAL", refresh=Scripted(RuntimeError("api down")))

        with pytest.raises(ResourceNotFoundError, match="couldn't find resource"):
            wait_for_exists(conf, FAST)

    def test_gives_up_after_tick_budget(self):
        refresh = Scripted(then=(None, ""))
        conf = StateChange(target="NORMAL", refresh=refresh)

        with pytest.raises(ResourceNotFoundError):
            wait_for_exists(conf, FAST)
        assert refresh.calls == FAST.max_ticks + 1


class TestWaitForDoesNotExist:
    def test_returns_when_gone(self):
        refresh = Scripted(("res", "TERMINATING"), (None, ""))
        conf = StateChange(target="TERMINATED", pending=("TERMINATING",), refresh=refresh)

        wait_for_does_not_exist(conf, FAST)
        assert refresh.calls == 2

    def test_target_state_counts_as_gone(self):
        refresh = Scripted(("res", "TERMINATED"))
        conf = StateChange(target="TERMINATED", pending=("TERMINATING",), refresh=refresh)

        wait_for_does_not_exist(conf, FAST)
        assert refresh.calls == 1

    def test_times_out_while_resource_lingers(self):
        refresh = Scripted(then=("res", "TERMINATING"))
        conf = StateChange(target="TERMINATED", pending=("TERMINATING",), refresh=refresh)

        with pytest.raises(PollTimeoutError, match="still exists"):
            wait_for_does_not_exist(conf, FAST)
        assert refresh.calls == FAST.max_ticks + 1

    def test_refresh_error_is_reported(self):
        conf = StateChange(target="TERMINATED", refresh=Scripted(RuntimeError("api down")))

        with pytest.raises(ResourceNotFoundError):
            wait_for_does_not_exist(conf, FAST)


class TestRefreshFunctions:
    def test_image_state_refresh(self, cloud: FakeCloud, world: World):
        world.add_image(HOME, Image(image_id="img-1", name="web", state="SYNCING"))

        image, state = image_state_refresh(cloud, "img-1")()

        assert image is not None and image.image_id == "img-1"
        assert state == "SYNCING"

    def test_image_state_refresh_missing(self, cloud: FakeCloud):
        assert image_state_refresh(cloud, "img-nope")() == (None, "")

    def test_api_error_reads_as_not_found(self, cloud: FakeCloud, world: World):
        world.add_image(HOME, Image(image_id="img-1", name="web", state="NORMAL"))
        world.fail("describe_images", api_error("DescribeImages"))

        assert image_state_refresh(cloud, "img-1")() == (None, "")

    def test_image_exists_refresh_matches_private_name(self, cloud: FakeCloud, world: World):
        world.add_image(HOME, Image(image_id="img-pub", name="web", image_type="PUBLIC_IMAGE"))
        world.add_image(HOME, Image(image_id="img-2", name="web", state="PENDING", image_type="PRIVATE_IMAGE"))

        image, state = image_exists_refresh(cloud, "web")()

        assert image is not None and image.image_id == "img-2"
        assert state == "PENDING"

    def test_instance_state_refresh(self, cloud: FakeCloud, world: World):
        world.instances["ins-1"] = Instance(instance_id="ins-1", state="STOPPING")

        instance, state = instance_state_refresh(cloud, "ins-1")()

        assert instance is not None and state == "STOPPING"
        assert instance_state_refresh(cloud, "ins-2")() == (None, "")
