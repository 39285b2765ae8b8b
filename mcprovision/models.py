"""Value types shared by the resolver, store, fetcher and launch assembler.

Everything here is immutable once built; the same instances are handed to
many download workers without locking.
"""
import datetime
import enum
import hashlib
import pathlib
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, Optional, Tuple

from .rules import Rule

SUPPORTED_ALGORITHMS = ('sha1', 'sha256')


@dataclass(frozen=True)
class Digest:
    """Hash algorithm plus expected hex value."""
    algorithm: str
    value: str

    def __post_init__(self):
        algorithm = self.algorithm.lower()
        if algorithm not in SUPPORTED_ALGORITHMS:
            raise ValueError(f"Unsupported digest algorithm: {self.algorithm}")
        object.__setattr__(self, 'algorithm', algorithm)
        object.__setattr__(self, 'value', self.value.strip().lower())

    @classmethod
    def sha1(cls, value: str) -> 'Digest':
        return cls('sha1', value)

    @classmethod
    def sha256(cls, value: str) -> 'Digest':
        return cls('sha256', value)

    def new_hasher(self):
        return hashlib.new(self.algorithm)

    def matches(self, hexdigest: str) -> bool:
        return self.value == hexdigest.lower()

    def __str__(self) -> str:
        return f"{self.algorithm}:{self.value}"


class ArtifactKind(enum.Enum):
    CLIENT = 'client'
    LIBRARY = 'library'
    NATIVE = 'native'
    ASSET_INDEX = 'asset_index'
    ASSET = 'asset'
    LOG_CONFIG = 'log_config'
    VERSION = 'version'
    RUNTIME = 'runtime'


@dataclass(frozen=True)
class ArtifactRef:
    """A concrete unit of download work.

    Identity is the (path, digest) pair: the same bytes may legally live at
    several logical paths, and the same path may be requested with a different
    digest by a newer manifest. ``path`` is a POSIX path relative to the store
    root.
    """
    path: str
    digest: Digest
    url: str = field(default='', compare=False)
    size: Optional[int] = field(default=None, compare=False)
    kind: ArtifactKind = field(default=ArtifactKind.LIBRARY, compare=False)
    authenticated: bool = field(default=False, compare=False)

    @property
    def artifact_id(self) -> str:
        return self.path

    @property
    def key(self) -> Tuple[str, Digest]:
        return (self.path, self.digest)


class VerifyOutcome(enum.Enum):
    VALID = 'valid'
    MISSING = 'missing'
    CORRUPT = 'corrupt'


@dataclass(frozen=True)
class CacheEntry:
    """On-disk record of a verified artifact."""
    path: str
    digest: Digest
    size: int
    verified_at: float
    mtime_ns: int = 0

    def to_json(self) -> Dict[str, Any]:
        return {
            'path': self.path,
            'algorithm': self.digest.algorithm,
            'digest': self.digest.value,
            'size': self.size,
            'verified_at': self.verified_at,
            'mtime_ns': self.mtime_ns,
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> 'CacheEntry':
        return cls(
            path=data['path'],
            digest=Digest(data['algorithm'], data['digest']),
            size=int(data['size']),
            verified_at=float(data['verified_at']),
            mtime_ns=int(data.get('mtime_ns', 0)),
        )


# --- Manifest records ---

@dataclass(frozen=True)
class Download:
    url: str
    digest: Digest
    size: Optional[int] = None
    path: Optional[str] = None


@dataclass(frozen=True)
class LibraryRef:
    name: str
    path: str
    artifact: Optional[Download] = None
    classifiers: Dict[str, Download] = field(default_factory=dict, hash=False)
    natives: Dict[str, str] = field(default_factory=dict, hash=False)
    rules: Tuple[Rule, ...] = ()
    extract_excludes: Tuple[str, ...] = ()


@dataclass(frozen=True)
class AssetIndexRef:
    id: str
    download: Download
    total_size: Optional[int] = None


@dataclass(frozen=True)
class AssetEntry:
    name: str
    hash: str
    size: int


@dataclass(frozen=True)
class LoggingRef:
    id: str
    download: Download
    argument: str


@dataclass(frozen=True)
class VersionManifest:
    """One version document as published; inheritance is not applied yet."""
    id: str
    inherits_from: Optional[str] = None
    type: Optional[str] = None
    main_class: Optional[str] = None
    libraries: Tuple[LibraryRef, ...] = ()
    asset_index: Optional[AssetIndexRef] = None
    assets: Optional[str] = None
    client: Optional[Download] = None
    jvm_arguments: Optional[Tuple[Any, ...]] = None
    game_arguments: Optional[Tuple[Any, ...]] = None
    legacy_arguments: Optional[str] = None
    logging: Optional[LoggingRef] = None
    java_major: Optional[int] = None


# --- Resolution output ---

@dataclass(frozen=True)
class ResolvedLibrary:
    name: str
    ref: ArtifactRef
    native: bool = False
    extract_excludes: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ResolvedVersion:
    id: str
    chain: Tuple[str, ...]
    main_class: str
    type: str = 'release'
    libraries: Tuple[ResolvedLibrary, ...] = ()
    client: Optional[ArtifactRef] = None
    asset_index_id: Optional[str] = None
    asset_index: Optional[ArtifactRef] = None
    assets: Tuple[ArtifactRef, ...] = ()
    logging: Optional[ArtifactRef] = None
    logging_argument: Optional[str] = None
    jvm_arguments: Optional[Tuple[Any, ...]] = None
    game_arguments: Tuple[Any, ...] = ()
    # Set when the game line comes from 'minecraftArguments'.
    legacy: bool = False
    java_major: Optional[int] = None

    @property
    def artifacts(self) -> Tuple[ArtifactRef, ...]:
        """Every artifact this version needs, de-duplicated, in a stable order."""
        seen = {}
        for ref in self._iter_refs():
            seen.setdefault(ref.key, ref)
        return tuple(seen.values())

    def _iter_refs(self) -> Iterator[ArtifactRef]:
        if self.client is not None:
            yield self.client
        for lib in self.libraries:
            yield lib.ref
        if self.asset_index is not None:
            yield self.asset_index
        yield from self.assets
        if self.logging is not None:
            yield self.logging


@dataclass(frozen=True)
class Credential:
    """Opaque bearer credential plus the profile fields injected into launch arguments."""
    token: str
    expires_at: datetime.datetime
    refresh_handle: Optional[str] = None
    username: str = 'Player'
    uuid: str = '00000000-0000-0000-0000-000000000000'
    xuid: str = '0'
    user_type: str = 'msa'

    def expired(self, now: datetime.datetime) -> bool:
        return self.expires_at <= now


@dataclass(frozen=True)
class LaunchSpec:
    command: Tuple[str, ...]
    classpath: Tuple[str, ...]
    natives_dir: pathlib.Path
    working_dir: pathlib.Path
    main_class: str

    def masked_command(self, secret: str) -> str:
        """Command line for logging, with the access token hidden."""
        parts = [arg.replace(secret, '********') if secret else arg for arg in self.command]
        return ' '.join(parts)
