"""Exception taxonomy for resolving, fetching and assembling a game install.

Callers are expected to surface these verbatim to the user-facing layer, so
every message names the version, artifact or placeholder involved.
"""
from typing import Any, Dict, Optional, Sequence


class ProvisionError(Exception):
    """Base class for every error raised by the provisioning core."""


# --- Resolution ---

class ResolveError(ProvisionError):
    pass


class Unreachable(ResolveError):
    def __init__(self, version_id: str, cause: Optional[BaseException] = None):
        self.version_id = version_id
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"Version '{version_id}' is not cached and the remote source is unreachable{detail}")


class UnknownVersion(ResolveError):
    def __init__(self, version_id: str):
        self.version_id = version_id
        super().__init__(f"Version '{version_id}' is neither listed remotely nor installed locally")


class CyclicInheritance(ResolveError):
    def __init__(self, chain: Sequence[str]):
        self.chain = tuple(chain)
        super().__init__(f"Cyclic inheritance: {' -> '.join(self.chain)}")


class InheritanceTooDeep(ResolveError):
    def __init__(self, chain: Sequence[str], limit: int):
        self.chain = tuple(chain)
        self.limit = limit
        super().__init__(f"Inheritance chain exceeds {limit} levels: {' -> '.join(self.chain)}")


class MalformedManifest(ResolveError):
    def __init__(self, source: str, detail: str):
        self.source = source
        self.detail = detail
        super().__init__(f"Malformed manifest {source}: {detail}")


# --- Artifact store ---

class StoreError(ProvisionError):
    pass


class DigestMismatch(StoreError):
    def __init__(self, ref: Any, actual: str):
        self.ref = ref
        self.actual = actual
        super().__init__(f"Digest mismatch for {ref.path}: expected {ref.digest}, got {ref.digest.algorithm}:{actual}")


class IoFailure(StoreError):
    def __init__(self, path: Any, cause: BaseException):
        self.path = path
        self.cause = cause
        super().__init__(f"I/O failure on {path}: {cause}")


class UnsafePath(StoreError):
    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Artifact path escapes the store root: {path}")


# --- Fetching ---

class FetchError(ProvisionError):
    pass


class Unauthenticated(FetchError):
    def __init__(self, cause: BaseException):
        self.cause = cause
        super().__init__(f"Authentication failed: {cause}")


class ExhaustedRetries(FetchError):
    def __init__(self, ref: Any, attempts: int, cause: BaseException):
        self.ref = ref
        self.attempts = attempts
        self.cause = cause
        super().__init__(f"Giving up on {ref.url} after {attempts} attempts: {cause}")


class FetchCancelled(FetchError):
    def __init__(self, completed: int, total: int):
        self.completed = completed
        self.total = total
        super().__init__(f"Fetch cancelled after {completed}/{total} artifacts")


class FetchFailed(FetchError):
    """One or more artifacts could not be fetched; ``failures`` maps each to its error."""

    def __init__(self, failures: Dict[Any, BaseException]):
        self.failures = dict(failures)
        lines = [f"  {ref.path}: {error}" for ref, error in self.failures.items()]
        super().__init__(f"{len(self.failures)} artifact(s) failed to download:\n" + "\n".join(lines))


# --- Assembly ---

class AssembleError(ProvisionError):
    pass


class IncompleteInstall(AssembleError):
    def __init__(self, ref: Any, outcome: Any):
        self.ref = ref
        self.outcome = outcome
        super().__init__(f"Artifact {ref.path} is {outcome.value}; run the fetch step before launching")


class UnresolvedPlaceholder(AssembleError):
    def __init__(self, placeholder: str, argument: str):
        self.placeholder = placeholder
        self.argument = argument
        super().__init__(f"Unresolved placeholder ${{{placeholder}}} in argument '{argument}'")


class ExtractionFailure(AssembleError):
    def __init__(self, archive: Any, cause: Any):
        self.archive = archive
        self.cause = cause
        super().__init__(f"Failed to extract natives from {archive}: {cause}")


# --- Authentication ---

class AuthError(ProvisionError):
    pass


# --- Runtime ---

class JavaNotFound(ProvisionError):
    pass


class UnsupportedPlatform(ProvisionError, OSError):
    """The host operating system has no Minecraft platform name."""
