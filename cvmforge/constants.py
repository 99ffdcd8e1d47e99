"""Centralized constants and enums for cvmforge.

All magic strings, API states and tunables are defined here to ensure
consistency throughout the codebase.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Final

BUILDER_ID: Final = "cvmforge.tencentcloud"

# =============================================================================
# CVM Resource States
# =============================================================================


class InstanceState(StrEnum):
    """CVM instance state names."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"
    STOPPED = "STOPPED"
    TERMINATING = "TERMINATING"
    TERMINATED = "TERMINATED"


class ImageState(StrEnum):
    """CVM image state names."""

    PENDING = "PENDING"
    SYNCING = "SYNCING"
    NORMAL = "NORMAL"


class SSHInterface(StrEnum):
    """Instance address used to reach the build instance."""

    PUBLIC_IP = "public_ip"
    PRIVATE_IP = "private_ip"


PRIVATE_IMAGE: Final = "PRIVATE_IMAGE"

# The provider reports this literal id for a copy that has no id assigned yet.
PLACEHOLDER_IMAGE_ID: Final = "unkown"

# =============================================================================
# Polling
# =============================================================================

TIMEOUT_ENV: Final = "CVMFORGE_TIMEOUT_SECONDS"
POLL_DELAY_ENV: Final = "CVMFORGE_POLL_DELAY_SECONDS"
DEFAULT_TIMEOUT_SECONDS: Final = 300.0
DEFAULT_POLL_DELAY_SECONDS: Final = 2.0

IMAGE_PAGE_SIZE: Final = 100

REGION_LOOKUP_ATTEMPTS: Final = 5
REGION_LOOKUP_DELAY: Final = 2.0

ADDRESS_LOOKUP_TRIES: Final = 3
ADDRESS_LOOKUP_DELAY: Final = 2.0

# =============================================================================
# Naming limits
# =============================================================================

MAX_IMAGE_NAME: Final = 20
MAX_IMAGE_DESCRIPTION: Final = 60
TEMPORARY_NAME_PREFIX: Final = "cvmforge_"
TEMPORARY_NAME_LENGTH: Final = 24
KEY_PAIR_ID_PREFIX: Final = "skey-"
