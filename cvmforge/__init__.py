"""cvmforge - Build Tencent Cloud CVM images from a declarative config.

Example:

    from cvmforge import Builder, LogConfig, load_config, logging_session

    with logging_session(LogConfig(level="DEBUG")):
        artifact = Builder(load_config("build.toml")).run()
    print(artifact.id)   # "ap-guangzhou:img-xxxx,ap-shanghai:img-yyyy"
"""

from cvmforge.artifact import Artifact
from cvmforge.builder import Builder
from cvmforge.config import (
    AuthConfig,
    BuildConfig,
    CommConfig,
    ImageConfig,
    RunConfig,
    load_config,
    prepare_config,
)
from cvmforge.constants import BUILDER_ID
from cvmforge.exceptions import (
    AmbiguousImageError,
    BuildCancelledError,
    BuildError,
    CloudAPIError,
    ConfigError,
    CvmForgeError,
    MultiError,
    NoMatchingImageError,
    ReplicationError,
)
from cvmforge.filters import ImageFilter
from cvmforge.logging import LogConfig, logging_session, setup_logging, teardown_logging
from cvmforge.pipeline import PipelineStatus, Runner, StepAction
from cvmforge.state import BuildState, Cancellation

__version__ = "0.1.0"

__all__ = [
    "AmbiguousImageError",
    "Artifact",
    "AuthConfig",
    "BUILDER_ID",
    "BuildCancelledError",
    "BuildConfig",
    "BuildError",
    "BuildState",
    "Builder",
    "Cancellation",
    "CloudAPIError",
    "CommConfig",
    "ConfigError",
    "CvmForgeError",
    "ImageConfig",
    "ImageFilter",
    "LogConfig",
    "MultiError",
    "NoMatchingImageError",
    "PipelineStatus",
    "ReplicationError",
    "RunConfig",
    "Runner",
    "StepAction",
    "load_config",
    "logging_session",
    "prepare_config",
    "setup_logging",
    "teardown_logging",
]
