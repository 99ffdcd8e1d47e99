"""Builder facade: prepare, run and cancel one image build.

Example:
    from cvmforge import Builder, load_config

    builder = Builder(load_config("build.toml"))
    builder.prepare()
    artifact = builder.run()
    print(artifact)

``cancel()`` may be called from another thread (e.g. a SIGINT handler);
the running build unwinds and ``run`` raises ``BuildCancelledError``.
"""

from __future__ import annotations

import random
from typing import TYPE_CHECKING

from loguru import logger

from cvmforge.artifact import Artifact
from cvmforge.config import prepare_config, scrub
from cvmforge.constants import BUILDER_ID
from cvmforge.exceptions import BuildCancelledError, BuildError, StepError
from cvmforge.pipeline import PipelineStatus, Runner
from cvmforge.ssh import connect
from cvmforge.state import BuildState, Cancellation
from cvmforge.steps import build_steps
from cvmforge.ui import ConsoleUi

if TYPE_CHECKING:
    from cvmforge.cloud.types import CloudClient
    from cvmforge.config import BuildConfig
    from cvmforge.steps import Connector, ProvisionHook
    from cvmforge.ui import Ui

log = logger.bind(component="builder")


class Builder:
    """Drives the build steps for one configuration.

    ``client``, ``ui``, ``rng`` and ``connector`` default to the real
    implementations and exist so callers can substitute their own.
    """

    def __init__(
        self,
        config: BuildConfig,
        *,
        client: CloudClient | None = None,
        ui: Ui | None = None,
        rng: random.Random | None = None,
        connector: Connector = connect,
    ) -> None:
        self._raw_config = config
        self._config: BuildConfig | None = None
        self._client = client
        self._ui = ui
        self._rng = rng
        self._connector = connector
        self._cancellation = Cancellation()
        self._runner: Runner | None = None

    @property
    def builder_id(self) -> str:
        return BUILDER_ID

    @property
    def config(self) -> BuildConfig:
        return self._config or self._raw_config

    @property
    def runner(self) -> Runner | None:
        return self._runner

    def prepare(self) -> BuildConfig:
        """Validate and normalise the configuration.

        Raises:
            ConfigError: listing every configuration problem.
        """
        config = prepare_config(self._raw_config, self._rng)
        log.debug(
            "Prepared config: {config}",
            config=scrub(repr(config), config.auth.secret_id, config.auth.secret_key),
        )
        self._config = config
        return config

    def run(self, hook: ProvisionHook | None = None) -> Artifact | None:
        """Run every step and return the artifact.

        Returns None when the build completed without producing images.

        Raises:
            BuildError: a step failed; the first failure is ``error`` and
                cleanup failures are in ``cleanup_errors``.
            BuildCancelledError: ``cancel()`` was called.
        """
        config = self._config or self.prepare()
        client = self._client or _default_client(config)
        ui = self._ui or ConsoleUi(config.build_name)

        state = BuildState(config=config, client=client, ui=ui, cancellation=self._cancellation)
        self._runner = Runner(build_steps(hook, self._connector))

        log.info("Starting build {name}", name=config.build_name)
        result = self._runner.run(state)

        for error in result.cleanup_errors:
            log.warning("Cleanup problem: {err}", err=error)

        match result.status:
            case PipelineStatus.CANCELLED:
                ui.error("build was cancelled")
                raise BuildCancelledError() from result.error
            case PipelineStatus.HALTED:
                error = result.error or StepError("build halted")
                ui.error(f"build errored: {error}")
                raise BuildError(error, result.cleanup_errors) from error

        if not state.images:
            return None

        artifact = Artifact(state.images, client, BUILDER_ID)
        ui.say(str(artifact).rstrip())
        return artifact

    def cancel(self) -> None:
        log.info("Cancelling run...")
        self._cancellation.cancel()


def _default_client(config: BuildConfig) -> CloudClient:
    from cvmforge.cloud.tencent import TencentCloud

    return TencentCloud.from_config(config.auth)
