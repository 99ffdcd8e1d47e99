"""Custom exception hierarchy for cvmforge.

All cvmforge-specific exceptions inherit from CvmForgeError, enabling
callers to catch every build failure with a single except clause.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping


class CvmForgeError(Exception):
    """Base exception for all cvmforge errors."""


class ConfigError(CvmForgeError):
    """Raised when the build configuration is invalid.

    Collects every problem found so the operator can fix them in one pass.
    """

    def __init__(self, errors: Iterable[str]) -> None:
        self.errors = tuple(errors)
        lines = "\n".join(f"* {e}" for e in self.errors)
        super().__init__(f"{len(self.errors)} configuration error(s):\n{lines}")


class CloudAPIError(CvmForgeError):
    """Raised when a cloud API call fails."""

    def __init__(
        self,
        action: str,
        code: str | None,
        message: str,
        request_id: str | None = None,
    ) -> None:
        self.action = action
        self.code = code
        self.message = message
        self.request_id = request_id
        detail = f"[{code}] {message}" if code else message
        super().__init__(f"{action} failed: {detail}")


class RetryExhaustedError(CvmForgeError):
    """Raised when a retried operation never reports success."""

    def __init__(self, attempts: int) -> None:
        self.attempts = attempts
        super().__init__(f"operation did not succeed after {attempts} attempt(s)")


class BuildCancelledError(CvmForgeError):
    """Raised when the build was cancelled while waiting."""

    def __init__(self, message: str = "interrupted") -> None:
        super().__init__(message)


class UnexpectedStateError(CvmForgeError):
    """Raised when a polled resource drifts outside the expected states."""

    def __init__(self, state: str, target: str) -> None:
        self.state = state
        self.target = target
        super().__init__(f"unexpected state '{state}', wanted target '{target}'")


class PollTimeoutError(CvmForgeError):
    """Raised when a poll exhausts its tick budget."""


class ResourceNotFoundError(CvmForgeError):
    """Raised when a polled resource could not be found."""

    def __init__(self, message: str = "couldn't find resource") -> None:
        super().__init__(message)


class ImageResolutionError(CvmForgeError):
    """Raised when a source image cannot be resolved unambiguously."""


class NoMatchingImageError(ImageResolutionError):
    """Raised when no image matches the configured filters or identifier."""

    def __init__(self, message: str = "no image found matching supplied filters") -> None:
        super().__init__(message)


class AmbiguousImageError(ImageResolutionError):
    """Raised when several images match and most_recent is off."""

    def __init__(self, count: int) -> None:
        self.count = count
        super().__init__(
            f"most_recent was not selected, and {count} images matching filters were found"
        )


class AddressResolutionError(CvmForgeError):
    """Raised when no address can be determined for the build instance."""


class StepError(CvmForgeError):
    """Raised by a build step whose forward action cannot complete."""


class MultiError(CvmForgeError):
    """Aggregates several independent errors."""

    def __init__(self, errors: Iterable[BaseException]) -> None:
        self.errors = tuple(errors)
        super().__init__(self._describe())

    def _describe(self) -> str:
        lines = "\n".join(f"* {e}" for e in self.errors)
        return f"{len(self.errors)} error(s) occurred:\n{lines}"


class ReplicationKickoffError(CvmForgeError):
    """Raised when the batched cross-region copy call is rejected."""


class ReplicationError(MultiError):
    """Raised when one or more regions failed to receive the image copy.

    ``resolved`` keeps the identifiers discovered for the regions that did
    succeed so they remain visible in diagnostics.
    """

    def __init__(
        self,
        errors: Iterable[BaseException],
        resolved: Mapping[str, str],
    ) -> None:
        self.resolved = dict(resolved)
        super().__init__(errors)

    def _describe(self) -> str:
        text = super()._describe()
        if not self.resolved:
            return text
        found = ", ".join(f"{r}: {i}" for r, i in sorted(self.resolved.items()))
        return f"{text}\nresolved copies: {found}"


class CommunicatorError(CvmForgeError):
    """Raised when the remote shell channel cannot be used."""


class RemoteCommandError(CommunicatorError):
    """Raised when a remote command exits with a non-zero status."""

    def __init__(self, command: str, exit_code: int, stderr: str) -> None:
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(f"command failed ({exit_code}): {stderr.strip()}")


class RegionError(CvmForgeError):
    """Wraps a failure that happened in one specific region."""

    def __init__(self, region: str, error: BaseException | str) -> None:
        self.region = region
        self.error = error
        super().__init__(f"region '{region}': {error}")


class BuildError(CvmForgeError):
    """Raised when a build halts.

    Wraps the first fatal forward error; cleanup failures ride along as
    warnings.
    """

    def __init__(
        self,
        error: BaseException,
        cleanup_errors: Iterable[BaseException] = (),
    ) -> None:
        self.error = error
        self.cleanup_errors = tuple(cleanup_errors)
        super().__init__(str(error))
