"""TOML-based build configuration.

Loads ~/.cvmforge/defaults.toml (global, typically credentials) and the
build file, merges them, and maps the result onto frozen dataclasses.
``prepare_config`` then validates and normalises the result before any
remote call is made.

Example build file:

    build_name = "web"
    provision_commands = ["apt-get update -y"]

    [auth]
    region = "ap-guangzhou"

    [image]
    image_name = "web-base"
    image_regions = ["ap-shanghai", "ap-beijing"]

    [run]
    instance_type = "S5.MEDIUM2"
    subnet_id = "subnet-aaa,subnet-bbb"

    [source_image_filter]
    filters = { "image-type" = "PUBLIC_IMAGE" }
    tag_filters = { os = "ubuntu" }
    tag_filter_delimiter = ";"
    most_recent = true
"""

from __future__ import annotations

import dataclasses
import os
import random
import re
import tomllib
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from cvmforge.constants import (
    KEY_PAIR_ID_PREFIX,
    MAX_IMAGE_DESCRIPTION,
    MAX_IMAGE_NAME,
    TEMPORARY_NAME_LENGTH,
    TEMPORARY_NAME_PREFIX,
    SSHInterface,
)
from cvmforge.exceptions import ConfigError
from cvmforge.filters import ImageFilter

type RawConfig = dict[str, Any]

GLOBAL_CONFIG_PATH = Path.home() / ".cvmforge" / "defaults.toml"

SECRET_ID_ENV = "TENCENTCLOUD_SECRET_ID"
SECRET_KEY_ENV = "TENCENTCLOUD_SECRET_KEY"

_IMAGE_NAME_INVALID = re.compile(r"[^0-9A-Za-z-]")


@dataclass(frozen=True, slots=True)
class AuthConfig:
    """Credentials and placement of the build.

    Attributes:
        secret_id: API secret id. Falls back to TENCENTCLOUD_SECRET_ID.
        secret_key: API secret key. Falls back to TENCENTCLOUD_SECRET_KEY.
        region: Home region; the image is created here first.
        project_id: Project for the instance and the temporary key pair.
        request_timeout: Per-request HTTP timeout in seconds.
    """

    secret_id: str = ""
    secret_key: str = field(default="", repr=False)
    region: str = ""
    project_id: int = 0
    request_timeout: int = 60


@dataclass(frozen=True, slots=True)
class ImageConfig:
    image_name: str = ""
    image_description: str = ""
    image_regions: tuple[str, ...] = ()
    force_deregister: bool = False
    clean_image_name: bool = False


@dataclass(frozen=True, slots=True)
class RunConfig:
    """How the ephemeral build instance is launched."""

    source_image_id: str = ""
    instance_type: str = ""
    availability_zone: str = ""
    instance_charge_type: str = ""
    system_disk_type: str = ""
    system_disk_size: int = 0
    vpc_id: str = ""
    subnet_id: str = ""
    internet_charge_type: str = ""
    internet_max_bandwidth_out: int = 0
    public_ip_assigned: bool = False
    security_group_ids: tuple[str, ...] = ()
    user_data: str = ""
    user_data_file: str = ""
    temporary_key_pair_name: str = ""
    ssh_keypair_id: str = ""  # existing key pair ID (skey-...), bound at launch
    disable_stop_instance: bool = False


@dataclass(frozen=True, slots=True)
class CommConfig:
    ssh_username: str = "root"
    ssh_password: str = field(default="", repr=False)
    ssh_private_key_file: str = ""
    ssh_interface: str = SSHInterface.PUBLIC_IP
    ssh_port: int = 22
    ssh_timeout: float = 300.0


@dataclass(frozen=True, slots=True)
class BuildConfig:
    """Complete configuration of one build."""

    auth: AuthConfig = field(default_factory=AuthConfig)
    image: ImageConfig = field(default_factory=ImageConfig)
    run: RunConfig = field(default_factory=RunConfig)
    comm: CommConfig = field(default_factory=CommConfig)
    source_image_filter: ImageFilter = field(default_factory=ImageFilter)
    build_name: str = "cvmforge"
    debug: bool = False
    force: bool = False
    provision_commands: tuple[str, ...] = ()

    @property
    def debug_key_path(self) -> Path:
        return Path(f"tc_{self.build_name}.pem")

    @classmethod
    def from_dict(cls, raw: RawConfig) -> BuildConfig:
        """Map a parsed TOML document onto a BuildConfig.

        Raises:
            ConfigError: unknown keys or sections were found.
        """
        errors: list[str] = []
        raw = dict(raw)

        auth = dict(raw.pop("auth", None) or {})
        auth.setdefault("secret_id", os.environ.get(SECRET_ID_ENV, ""))
        auth.setdefault("secret_key", os.environ.get(SECRET_KEY_ENV, ""))

        sections = {
            "auth": _section(AuthConfig, "auth", auth, errors),
            "image": _section(ImageConfig, "image", raw.pop("image", None) or {}, errors),
            "run": _section(RunConfig, "run", raw.pop("run", None) or {}, errors),
            "comm": _section(CommConfig, "comm", raw.pop("comm", None) or {}, errors),
            "source_image_filter": ImageFilter.from_dict(raw.pop("source_image_filter", None) or {}, errors),
        }
        top = _section(cls, "build", raw, errors, exclude=frozenset(sections))

        if errors:
            raise ConfigError(errors)
        return dataclasses.replace(top, **sections)


def _section[T](
    cls: type[T],
    name: str,
    raw: RawConfig,
    errors: list[str],
    exclude: frozenset[str] = frozenset(),
) -> T:
    known = {f.name for f in dataclasses.fields(cls)} - exclude  # type: ignore[arg-type]
    values: RawConfig = {}
    for key, value in raw.items():
        if key not in known:
            errors.append(f"unknown key '{key}' in [{name}]")
            continue
        values[key] = tuple(value) if isinstance(value, list) else value
    return cls(**values)


def _deep_merge(base: RawConfig, override: RawConfig) -> RawConfig:
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _read_toml(path: Path) -> RawConfig:
    if not path.is_file():
        return {}
    with path.open("rb") as f:
        return tomllib.load(f)


def load_config(path: Path | str, *, global_path: Path | None = None) -> BuildConfig:
    """Read a build file, layered over the global defaults file.

    Raises:
        ConfigError: the build file is missing, unparsable or has unknown keys.
    """
    path = Path(path)
    if not path.is_file():
        raise ConfigError([f"config file not found: {path}"])
    try:
        merged = _deep_merge(_read_toml(global_path or GLOBAL_CONFIG_PATH), _read_toml(path))
    except tomllib.TOMLDecodeError as e:
        raise ConfigError([f"invalid TOML: {e}"]) from e
    return BuildConfig.from_dict(merged)


# =============================================================================
# Validation
# =============================================================================


def clean_image_name(name: str) -> str:
    """Replace every character other than alphanumerics and dashes with a dash."""
    return _IMAGE_NAME_INVALID.sub("-", name)


def temporary_name() -> str:
    return f"{TEMPORARY_NAME_PREFIX}{uuid.uuid4().hex}"[:TEMPORARY_NAME_LENGTH]


def _prepare_auth(auth: AuthConfig, errors: list[str]) -> AuthConfig:
    if not auth.secret_id or not auth.secret_key:
        errors.append("'secret_id' and 'secret_key' must both be set")
    if not auth.region:
        errors.append("region must be specified")
    return auth


def _prepare_image(image: ImageConfig, force: bool, errors: list[str]) -> ImageConfig:
    if not image.image_name:
        errors.append("image_name must be specified")
    if len(image.image_name) > MAX_IMAGE_NAME:
        errors.append(f"image_name must be at most {MAX_IMAGE_NAME} characters")
    if len(image.image_description) > MAX_IMAGE_DESCRIPTION:
        errors.append(f"image_description must be at most {MAX_IMAGE_DESCRIPTION} characters")

    name = image.image_name
    cleaned = clean_image_name(name)
    if cleaned != name and not image.clean_image_name:
        errors.append("image_name can only contain alphanumerics and dashes")
    else:
        name = cleaned

    return dataclasses.replace(
        image,
        image_name=name,
        force_deregister=image.force_deregister or force,
    )


def _prepare_run(
    run: RunConfig,
    image_filter: ImageFilter,
    comm: CommConfig,
    rng: random.Random,
    errors: list[str],
) -> RunConfig:
    if run.source_image_id and not image_filter.empty:
        errors.append("source_image_id and source_image_filter cannot both be specified")
    elif not run.source_image_id and image_filter.empty:
        errors.append("either source_image_id or source_image_filter must be specified")

    if not run.instance_type:
        errors.append("instance_type must be specified")

    if run.user_data and run.user_data_file:
        errors.append("user_data and user_data_file cannot both be specified")
    elif run.user_data_file and not Path(run.user_data_file).is_file():
        errors.append(f"user_data_file not found: {run.user_data_file}")

    if run.ssh_keypair_id:
        if not run.ssh_keypair_id.startswith(KEY_PAIR_ID_PREFIX):
            errors.append(
                f"ssh_keypair_id must be a key pair ID ({KEY_PAIR_ID_PREFIX}...), got '{run.ssh_keypair_id}'"
            )
        if not (comm.ssh_private_key_file or comm.ssh_password):
            errors.append("ssh_keypair_id requires ssh_private_key_file or ssh_password")

    temporary_key = run.temporary_key_pair_name
    if not any((run.ssh_keypair_id, temporary_key, comm.ssh_private_key_file, comm.ssh_password)):
        temporary_key = temporary_name()

    subnet = run.subnet_id
    if not subnet:
        errors.append("subnet_id must be specified")
    else:
        subnets = [s.strip() for s in subnet.split(",") if s.strip()]
        subnet = rng.choice(subnets) if subnets else ""

    return dataclasses.replace(run, temporary_key_pair_name=temporary_key, subnet_id=subnet)


def _prepare_comm(comm: CommConfig, errors: list[str]) -> CommConfig:
    if comm.ssh_interface not in set(SSHInterface):
        valid = ", ".join(SSHInterface)
        errors.append(f"unknown ssh_interface '{comm.ssh_interface}', valid: {valid}")
    if not comm.ssh_username:
        errors.append("ssh_username must be specified")
    if comm.ssh_private_key_file and not Path(comm.ssh_private_key_file).is_file():
        errors.append(f"ssh_private_key_file not found: {comm.ssh_private_key_file}")
    if comm.ssh_timeout <= 0:
        errors.append("ssh_timeout must be positive")
    return comm


def prepare_config(config: BuildConfig, rng: random.Random | None = None) -> BuildConfig:
    """Validate ``config`` and return its normalised form.

    ``rng`` picks one subnet out of a comma-separated ``subnet_id``.

    Raises:
        ConfigError: listing every problem found.
    """
    errors: list[str] = []
    rng = rng or random.Random()

    prepared = dataclasses.replace(
        config,
        auth=_prepare_auth(config.auth, errors),
        image=_prepare_image(config.image, config.force, errors),
        run=_prepare_run(config.run, config.source_image_filter, config.comm, rng, errors),
        comm=_prepare_comm(config.comm, errors),
    )

    if errors:
        raise ConfigError(errors)
    return prepared


def scrub(text: str, *secrets: str) -> str:
    """Replace every non-empty secret in ``text`` with a placeholder."""
    for secret in secrets:
        if secret:
            text = text.replace(secret, "<Filtered>")
    return text
