"""
Turns a version id into the flat list of artifacts needed to run it.

Inheritance is applied as an explicit overlay of plain records, walked from
the root ancestor down to the requested version.
"""
import asyncio
import collections
import contextlib
import logging
import os
import pathlib
import uuid
from typing import Dict, List, Optional, Sequence, Tuple

import aiofiles
import aiofiles.os
import aiohttp

from .config import RESOURCES_URL, VERSION_MANIFEST_URL
from .errors import (CyclicInheritance, InheritanceTooDeep, MalformedManifest,
                     Unreachable, UnknownVersion, UnsafePath)
from .manifest import (VersionList, maven_path, parse_asset_index,
                       parse_version_list, parse_version_manifest)
from .models import (ArtifactKind, ArtifactRef, Digest, Download, LibraryRef,
                     ResolvedLibrary, ResolvedVersion, VersionManifest, VerifyOutcome)
from .net import HttpClient, HttpStatusError, retry
from .rules import PlatformFacts, is_allowed
from .store import ArtifactStore

log = logging.getLogger(__name__)

VERSION_LIST_CACHE = 'versions/version_manifest_v2.json'
NETWORK_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, HttpStatusError)


def overlay(parent: VersionManifest, child: VersionManifest) -> VersionManifest:
    """
    Applies ``child`` on top of an already flattened ``parent``.

    Libraries are keyed by artifact path: a child library replaces the
    parent's entry in place, new ones are appended. Modern argument lists are
    concatenated; every other field is taken from the child when it sets it.
    """
    libraries = collections.OrderedDict((lib.path, lib) for lib in parent.libraries)
    for lib in child.libraries:
        libraries[lib.path] = lib

    def _concat(a, b):
        if a is None and b is None:
            return None
        return tuple(a or ()) + tuple(b or ())

    return VersionManifest(
        id=child.id,
        inherits_from=None,
        type=child.type or parent.type,
        main_class=child.main_class or parent.main_class,
        libraries=tuple(libraries.values()),
        asset_index=child.asset_index or parent.asset_index,
        assets=child.assets or parent.assets,
        client=child.client or parent.client,
        jvm_arguments=_concat(parent.jvm_arguments, child.jvm_arguments),
        game_arguments=_concat(parent.game_arguments, child.game_arguments),
        legacy_arguments=child.legacy_arguments or parent.legacy_arguments,
        logging=child.logging or parent.logging,
        java_major=child.java_major or parent.java_major,
    )


def flatten(chain: Sequence[VersionManifest]) -> VersionManifest:
    """Overlays a chain given child-first, starting from the root ancestor."""
    merged = chain[-1]
    for manifest in reversed(chain[:-1]):
        merged = overlay(merged, manifest)
    return merged


def select_native_classifier(lib: LibraryRef, facts: PlatformFacts) -> Optional[str]:
    """Picks the classifier holding this platform's natives, if the library has one."""
    if facts.os_name in lib.natives:
        key = lib.natives[facts.os_name].replace('${arch}', facts.arch_bits)
        if key in lib.classifiers:
            return key
    if lib.natives or any(k.startswith('natives-') for k in lib.classifiers):
        for key in (f"natives-{facts.os_name}-{facts.arch}", f"natives-{facts.os_name}"):
            if key in lib.classifiers:
                return key
    return None


class ManifestResolver:

    def __init__(
        self,
        http: HttpClient,
        store: ArtifactStore,
        *,
        facts: Optional[PlatformFacts] = None,
        version_manifest_url: str = VERSION_MANIFEST_URL,
        resources_url: str = RESOURCES_URL,
        artifact_gateway_url: Optional[str] = None,
        max_depth: int = 16,
        max_retries: int = 4,
        retry_backoff: float = 0.5,
    ):
        self.http = http
        self.store = store
        self.facts = facts or PlatformFacts.current()
        self.version_manifest_url = version_manifest_url
        self.resources_url = resources_url.rstrip('/')
        self.artifact_gateway_url = artifact_gateway_url.rstrip('/') if artifact_gateway_url else None
        self.max_depth = max_depth
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self._manifests: Dict[str, VersionManifest] = {}
        self._asset_indexes: Dict[Tuple[str, Digest], Tuple[ArtifactRef, ...]] = {}
        self._version_list: Optional[VersionList] = None
        self._version_list_loaded = False
        self._version_list_error: Optional[BaseException] = None

    # --- Public API ---

    async def resolve(self, version_id: str) -> ResolvedVersion:
        chain = await self.load_chain(version_id)
        log.info(f"Resolving {chain[0].id} (chain: {' -> '.join(m.id for m in chain)})")
        merged = flatten(chain)
        if not merged.main_class:
            raise MalformedManifest(merged.id, "no 'mainClass' in the version or its parents")

        client = None
        client_owner = next((m for m in chain if m.client is not None), None)
        if client_owner is not None:
            client = self._ref(f"versions/{client_owner.id}/{client_owner.id}.jar", client_owner.client, ArtifactKind.CLIENT)

        libraries = self._select_libraries(merged)

        asset_index_ref = None
        assets: Tuple[ArtifactRef, ...] = ()
        if merged.asset_index is not None:
            index = merged.asset_index
            asset_index_ref = self._ref(f"assets/indexes/{index.id}.json", index.download, ArtifactKind.ASSET_INDEX)
            assets = await self._load_assets(merged.id, asset_index_ref)

        logging_ref = None
        if merged.logging is not None:
            logging_ref = self._ref(f"assets/log_configs/{merged.logging.id}", merged.logging.download, ArtifactKind.LOG_CONFIG)

        # A legacy ancestor keeps its flat game line; modern children only append to it.
        legacy = merged.legacy_arguments is not None
        game_arguments = tuple(merged.game_arguments or ())
        if legacy:
            game_arguments = tuple(merged.legacy_arguments.split()) + game_arguments

        resolved = ResolvedVersion(
            id=merged.id,
            chain=tuple(m.id for m in chain),
            main_class=merged.main_class,
            type=merged.type or 'release',
            libraries=libraries,
            client=client,
            asset_index_id=merged.asset_index.id if merged.asset_index else merged.assets,
            asset_index=asset_index_ref,
            assets=assets,
            logging=logging_ref,
            logging_argument=merged.logging.argument if merged.logging else None,
            jvm_arguments=merged.jvm_arguments,
            game_arguments=game_arguments,
            legacy=legacy,
            java_major=merged.java_major,
        )
        log.info(f"Resolved {resolved.id}: {len(libraries)} libraries, {len(assets)} assets, {len(resolved.artifacts)} artifacts total")
        return resolved

    async def load_chain(self, version_id: str) -> List[VersionManifest]:
        """Loads ``version_id`` and its ancestors, child first."""
        chain: List[VersionManifest] = []
        seen: List[str] = []
        current: Optional[str] = version_id
        while current is not None:
            if current in seen:
                raise CyclicInheritance(seen + [current])
            if len(chain) >= self.max_depth:
                raise InheritanceTooDeep(seen + [current], self.max_depth)
            manifest = await self.load_manifest(current)
            if manifest.id in seen:
                raise CyclicInheritance(seen + [manifest.id])
            seen.append(manifest.id)
            chain.append(manifest)
            current = manifest.inherits_from
        return chain

    async def load_manifest(self, version_id: str) -> VersionManifest:
        """Returns the version document for ``version_id``, from memory, disk or network."""
        cached = self._manifests.get(version_id)
        if cached is not None:
            return cached

        version_list = await self._get_version_list()
        entry = None
        real_id = version_id
        if version_list is not None:
            real_id, entry = version_list.lookup(version_id)

        local_path = f"versions/{real_id}/{real_id}.json"
        if entry is not None:
            ref = ArtifactRef(path=local_path, digest=Digest.sha1(entry.sha1), url=entry.url, kind=ArtifactKind.VERSION)
            try:
                data = await self._ensure_document(ref)
            except NETWORK_ERRORS as e:
                raise Unreachable(real_id, e) from e
        else:
            data = await self._read_local(local_path)
            if data is None:
                if version_list is None:
                    raise Unreachable(version_id, self._version_list_error)
                raise UnknownVersion(version_id)
            log.info(f"Using locally installed version document {local_path}")

        manifest = parse_version_manifest(data, local_path)
        self._manifests[version_id] = manifest
        self._manifests[manifest.id] = manifest
        return manifest

    # --- Libraries and assets ---

    def _ref(self, path: str, download: Download, kind: ArtifactKind) -> ArtifactRef:
        """Builds the ref for ``path``, served from the artifact gateway when one is configured."""
        url = download.url
        if self.artifact_gateway_url is not None:
            url = f"{self.artifact_gateway_url}/{path}"
        return ArtifactRef(path=path, digest=download.digest, url=url, size=download.size, kind=kind)

    def _select_libraries(self, merged: VersionManifest) -> Tuple[ResolvedLibrary, ...]:
        selected = []
        for lib in merged.libraries:
            if not is_allowed(lib.rules, self.facts):
                log.debug(f"Skipping library due to rules: {lib.name}")
                continue
            if lib.artifact is not None:
                ref = self._ref(f"libraries/{lib.artifact.path or lib.path}", lib.artifact, ArtifactKind.LIBRARY)
                selected.append(ResolvedLibrary(name=lib.name, ref=ref))
            classifier = select_native_classifier(lib, self.facts)
            if classifier is not None:
                download = lib.classifiers[classifier]
                path = download.path or maven_path(f"{lib.name}:{classifier}")
                ref = self._ref(f"libraries/{path}", download, ArtifactKind.NATIVE)
                selected.append(ResolvedLibrary(
                    name=f"{lib.name}:{classifier}", ref=ref, native=True, extract_excludes=lib.extract_excludes))
        return tuple(selected)

    async def _load_assets(self, version_id: str, index_ref: ArtifactRef) -> Tuple[ArtifactRef, ...]:
        cached = self._asset_indexes.get(index_ref.key)
        if cached is not None:
            return cached
        try:
            data = await self._ensure_document(index_ref)
        except NETWORK_ERRORS as e:
            raise Unreachable(version_id, e) from e

        # Objects are stored by hash, so equal content is fetched once.
        by_hash: Dict[str, ArtifactRef] = {}
        for entry in parse_asset_index(data, index_ref.path):
            if entry.hash in by_hash:
                continue
            prefix = entry.hash[:2]
            by_hash[entry.hash] = ArtifactRef(
                path=f"assets/objects/{prefix}/{entry.hash}",
                digest=Digest.sha1(entry.hash),
                url=f"{self.resources_url}/{prefix}/{entry.hash}",
                size=entry.size,
                kind=ArtifactKind.ASSET,
            )
        assets = tuple(by_hash.values())
        self._asset_indexes[index_ref.key] = assets
        return assets

    # --- Documents ---

    async def _ensure_document(self, ref: ArtifactRef) -> bytes:
        """Returns the verified bytes of a small document, downloading it if needed."""
        if not await self.store.has(ref):
            log.info(f"Downloading {ref.path}")

            async def _attempt():
                async with self.http.stream(ref.url) as response:
                    await self.store.put(ref, response.iter_chunks())

            await retry(_attempt, attempts=self.max_retries + 1, backoff=self.retry_backoff, description=ref.url)
        return await self.store.read_bytes(ref)

    async def _read_local(self, path: str) -> Optional[bytes]:
        """Reads a version document that is not (or no longer) listed remotely."""
        record = self.store.recorded(path)
        if record is not None:
            ref = ArtifactRef(path=path, digest=record.digest, kind=ArtifactKind.VERSION)
            outcome = await self.store.verify(ref)
            if outcome is VerifyOutcome.VALID:
                return await self.store.read_bytes(ref)
            if outcome is VerifyOutcome.CORRUPT:
                log.warning(f"Cached {path} no longer matches its recorded digest; ignoring it.")
                return None
        try:
            file_path = self.store.resolve_path(path)
        except UnsafePath:
            return None
        try:
            async with aiofiles.open(file_path, 'rb') as f:
                return await f.read()
        except FileNotFoundError:
            return None

    async def _get_version_list(self) -> Optional[VersionList]:
        if self._version_list_loaded:
            return self._version_list
        self._version_list_loaded = True
        cache_path = self.store.root / VERSION_LIST_CACHE
        data = None
        try:
            data = await retry(
                lambda: self.http.get_bytes(self.version_manifest_url),
                attempts=self.max_retries + 1, backoff=self.retry_backoff, description=self.version_manifest_url,
            )
            try:
                await _write_atomic(cache_path, data)
            except OSError as e:
                log.warning(f"Could not cache the version list at {cache_path}: {e}")
        except NETWORK_ERRORS as e:
            self._version_list_error = e
            log.warning(f"Could not fetch the version list ({e!r}); trying the cached copy.")
            try:
                async with aiofiles.open(cache_path, 'rb') as f:
                    data = await f.read()
            except FileNotFoundError:
                log.warning("No cached version list available; only locally installed versions can be resolved.")
                return None
        self._version_list = parse_version_list(data, self.version_manifest_url)
        return self._version_list


async def _write_atomic(path: pathlib.Path, data: bytes) -> None:
    tmp = path.with_name(f".{path.name}.{uuid.uuid4().hex}.part")
    await aiofiles.os.makedirs(path.parent, exist_ok=True)
    try:
        async with aiofiles.open(tmp, 'wb') as f:
            await f.write(data)
        os.replace(tmp, path)
    finally:
        with contextlib.suppress(FileNotFoundError):
            os.remove(tmp)
