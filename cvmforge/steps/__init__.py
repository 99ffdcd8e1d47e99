"""The concrete build steps, in execution order."""

from __future__ import annotations

from typing import TYPE_CHECKING

from cvmforge.steps.connect import Connect, Connector
from cvmforge.steps.create_image import CreateImage
from cvmforge.steps.deregister_image import DeregisterImage
from cvmforge.steps.key_pair import KeyPair
from cvmforge.steps.pre_validate import PreValidate
from cvmforge.steps.provision import Provision, ProvisionHook
from cvmforge.steps.region_copy import ImageRegionCopy
from cvmforge.steps.run_instance import RunInstance
from cvmforge.steps.source_image import SourceImageInfo
from cvmforge.steps.stop_instance import StopInstance
from cvmforge.ssh import connect

if TYPE_CHECKING:
    from cvmforge.pipeline import Step

__all__ = [
    "Connect",
    "CreateImage",
    "DeregisterImage",
    "ImageRegionCopy",
    "KeyPair",
    "PreValidate",
    "Provision",
    "RunInstance",
    "SourceImageInfo",
    "StopInstance",
    "build_steps",
]


def build_steps(
    hook: ProvisionHook | None = None,
    connector: Connector = connect,
) -> list[Step]:
    """Fresh step instances for one run; steps keep per-run bookkeeping."""
    return [
        PreValidate(),
        SourceImageInfo(),
        KeyPair(),
        RunInstance(),
        Connect(connector),
        Provision(hook),
        StopInstance(),
        DeregisterImage(),
        CreateImage(),
        ImageRegionCopy(),
    ]
