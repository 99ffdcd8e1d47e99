"""SSH channel to the build instance."""

from __future__ import annotations

import io
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

import paramiko
from loguru import logger
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_delay,
    stop_any,
    wait_exponential,
)

from cvmforge.constants import ADDRESS_LOOKUP_DELAY, ADDRESS_LOOKUP_TRIES, SSHInterface
from cvmforge.exceptions import AddressResolutionError, CommunicatorError, RemoteCommandError

if TYPE_CHECKING:
    from cvmforge.cloud.types import CloudClient, Instance
    from cvmforge.state import Cancellation

log = logger.bind(component="ssh")

_KEY_TYPES: tuple[type[paramiko.PKey], ...] = (
    paramiko.RSAKey,
    paramiko.ECDSAKey,
    paramiko.Ed25519Key,
)


class Communicator(Protocol):
    """Remote shell used by the provisioning step."""

    def exec(self, command: str, timeout: float | None = None) -> str: ...

    def close(self) -> None: ...


@dataclass(frozen=True, slots=True)
class SSHConfig:
    """SSH connection configuration.

    Key-based auth is used whenever ``private_key`` is set, password auth
    otherwise.
    """

    host: str
    username: str
    port: int = 22
    private_key: str = field(default="", repr=False)
    password: str = field(default="", repr=False)


def load_private_key(text: str) -> paramiko.PKey:
    """Parse PEM/OpenSSH private key material of any supported type."""
    for key_type in _KEY_TYPES:
        try:
            return key_type.from_private_key(io.StringIO(text))
        except paramiko.SSHException:
            continue
    raise CommunicatorError("error establishing SSH configuration: unsupported private key")


class SSHConnection:
    """Single SSH session with synchronous command execution."""

    __slots__ = ("_client", "_host")

    def __init__(self, config: SSHConfig, *, connect_timeout: float = 30.0) -> None:
        log.debug(
            "Connecting to {host}:{port} as {user}", host=config.host, port=config.port, user=config.username
        )
        self._host = config.host
        self._client = paramiko.SSHClient()
        self._client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        kwargs: dict = {
            "hostname": config.host,
            "username": config.username,
            "port": config.port,
            "timeout": connect_timeout,
            "allow_agent": False,
            "look_for_keys": False,
        }
        if config.private_key:
            kwargs["pkey"] = load_private_key(config.private_key)
        else:
            kwargs["password"] = config.password

        try:
            self._client.connect(**kwargs)
        except BaseException:
            self._client.close()
            raise
        log.debug("Connected to {host}", host=config.host)

    def exec(self, command: str, timeout: float | None = None) -> str:
        """Execute immediately, return stdout."""
        preview = command[:80] + "..." if len(command) > 80 else command
        log.debug("exec on {host}: {cmd}", host=self._host, cmd=preview)
        _, stdout, stderr = self._client.exec_command(command, timeout=timeout)
        code = stdout.channel.recv_exit_status()
        log.debug("exit_code={code}", code=code)
        if code != 0:
            raise RemoteCommandError(command, code, stderr.read().decode(errors="replace"))
        return stdout.read().decode(errors="replace")

    def is_alive(self) -> bool:
        transport = self._client.get_transport()
        return transport is not None and transport.is_active()

    def close(self) -> None:
        self._client.close()


def _log_retry(state: RetryCallState) -> None:
    err = state.outcome.exception() if state.outcome else None
    log.debug("SSH not ready (attempt {n}): {err}", n=state.attempt_number, err=err)


def connect(
    config: SSHConfig,
    *,
    timeout: float,
    cancellation: Cancellation | None = None,
) -> SSHConnection:
    """Connect, retrying until the daemon accepts us or ``timeout`` elapses.

    Authentication failures are retried too: cloud-init may not have
    installed the key yet.
    """

    def cancelled(_: RetryCallState) -> bool:
        return cancellation is not None and cancellation.is_set()

    retrying = Retrying(
        stop=stop_any(stop_after_delay(timeout), cancelled),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type((paramiko.SSHException, OSError)),
        sleep=cancellation.wait if cancellation is not None else time.sleep,
        before_sleep=_log_retry,
        reraise=True,
    )
    return retrying(SSHConnection, config)


# =============================================================================
# Address resolution
# =============================================================================


def instance_address(instance: Instance, interface: str) -> str | None:
    match interface:
        case SSHInterface.PUBLIC_IP:
            return instance.public_ip
        case SSHInterface.PRIVATE_IP:
            return instance.private_ip
        case _:
            raise AddressResolutionError(f"unknown SSH interface type '{interface}'")


def resolve_host(
    client: CloudClient,
    instance: Instance,
    interface: str,
    *,
    tries: int = ADDRESS_LOOKUP_TRIES,
    delay: float = ADDRESS_LOOKUP_DELAY,
    cancellation: Cancellation | None = None,
) -> tuple[str, Instance]:
    """Find the address to connect to on the selected interface.

    Addresses may be assigned after the instance reports RUNNING, so the
    instance is re-described between tries. Returns the host together with
    the freshest instance description.

    Raises:
        AddressResolutionError: no address after ``tries`` lookups, or the
            instance disappeared.
    """
    host = instance_address(instance, interface)
    if host:
        return host, instance

    for attempt in range(tries):
        if attempt:
            if cancellation is not None:
                cancellation.wait(delay)
            else:
                time.sleep(delay)

        instances = client.describe_instances([instance.instance_id])
        if not instances:
            raise AddressResolutionError(f"instance not found: {instance.instance_id}")
        instance = instances[0]

        host = instance_address(instance, interface)
        if host:
            return host, instance

    raise AddressResolutionError("could not determine IP address for instance")
