"""
Exception hierarchy for sapkg.

Configuration errors abort before any pipeline work. Everything raised below
the pipeline carries the name of the package, mirror, or image it concerns so
that the message is useful once it reaches the console.
"""

from __future__ import annotations

from typing import Optional


class SapkgError(Exception):
    """Base class for all sapkg errors."""


class ConfigurationError(SapkgError):
    """A backing store (cache database, mirror file, index file) could not be initialised."""


class NetworkError(SapkgError):
    """A mirror or feed could not be reached, timed out, or answered with a bad status."""

    def __init__(self, target: str, message: str, status_code: Optional[int] = None):
        self.target = target
        self.status_code = status_code
        super().__init__(f"{target}: {message}")


class PackageNotFoundError(NetworkError):
    """The index answered, but does not know the package (or the pinned version)."""


class IntegrityError(SapkgError):
    """A downloaded artifact does not match the digest advertised by the index."""

    def __init__(self, package: str, expected: str, actual: str):
        self.package = package
        self.expected = expected
        self.actual = actual
        super().__init__(f"{package}: sha256 mismatch (expected {expected}, got {actual})")


class InstallError(SapkgError):
    """The package installer exited non-zero."""

    def __init__(self, package: str, returncode: int, output: str = ""):
        self.package = package
        self.returncode = returncode
        self.output = output
        detail = output.strip().splitlines()[-1] if output.strip() else f"exit code {returncode}"
        super().__init__(f"Failed to install '{package}': {detail}")


class ContainerError(SapkgError):
    """A docker operation on a named image or container failed."""

    def __init__(self, image: str, message: str):
        self.image = image
        super().__init__(f"{image}: {message}")


class ContainerBuildError(ContainerError):
    """`docker build` failed; no image is left tagged with the requested name."""


class VulnerabilityFeedError(SapkgError):
    """The advisory feed could not be fetched or parsed. The previous index is kept."""


class OperationCancelled(SapkgError):
    """The caller cancelled a long-running fetch or build."""
