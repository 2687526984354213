"""Exception taxonomy for resolution, installation and launch failures."""

from __future__ import annotations


class SearchPkgsError(Exception):
    """Base error; always names the offending package and version."""

    def __init__(self, message: str, *, package: str, version: str | None = None) -> None:
        self.package = package
        self.version = version
        self.message = message
        super().__init__(str(self))

    def __str__(self) -> str:
        target = self.package if self.version is None else f"{self.package} {self.version}"
        return f"{target}: {self.message}"


class ResolutionError(SearchPkgsError):
    """Manifest or recipe lookup failed."""


class UnknownPackage(ResolutionError):
    """No manifest entry or recipe matches the package name."""


class UnknownVersion(ResolutionError):
    """The package family exists but not at the requested version."""


class InstallError(SearchPkgsError):
    """Staged install failed."""


class FetchError(InstallError):
    """The artifact could not be downloaded or read."""


class IntegrityError(InstallError):
    """Fetched content does not match the manifest hash."""

    def __init__(
        self,
        message: str,
        *,
        package: str,
        version: str | None = None,
        expected: str | None = None,
        actual: str | None = None,
    ) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(message, package=package, version=version)


class PatchApplicationError(InstallError):
    """A recipe step could not find its target file or pattern."""


class LaunchError(SearchPkgsError):
    """The runtime home could not be prepared or the server not started."""


class ArtifactNotInstalled(LaunchError):
    """The installed tree to stage from does not exist."""


class HomeNotWritable(LaunchError):
    """The runtime home directory cannot be created or written to."""


class JavaHomeNotFound(LaunchError):
    """No Java runtime could be located for a Java based engine."""


class OperationTimeout(SearchPkgsError, TimeoutError):
    """A fetch or filesystem step exceeded its caller supplied timeout."""


class ManifestError(ValueError):
    """The manifest file is missing or malformed."""
