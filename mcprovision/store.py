"""
Content-addressed artifact store.

Files live at ``<root>/<artifact path>``; validity is decided by re-hashing
the bytes against the expected digest, never by size or timestamps. Verified
outcomes are cached for the lifetime of the store object, and a small JSON
index under ``<root>/.store/`` records digest, size and verification time for
diagnostics and for the opt-in metadata trust mode.
"""
import asyncio
import contextlib
import json
import logging
import os
import pathlib
import stat
import time
import uuid
from typing import AsyncIterable, Dict, Optional, Tuple

import aiofiles
import aiofiles.os

from .errors import DigestMismatch, IoFailure, UnsafePath
from .models import ArtifactRef, CacheEntry, Digest, VerifyOutcome

log = logging.getLogger(__name__)

HASH_CHUNK_SIZE = 64 * 1024
METADATA_DIR = '.store'
METADATA_FILE = 'index.json'


class ArtifactStore:

    def __init__(self, root: pathlib.Path, *, trust_metadata: bool = False):
        self.root = pathlib.Path(root).resolve()
        self.trust_metadata = trust_metadata
        self._outcomes: Dict[Tuple[str, Digest], VerifyOutcome] = {}
        self._entries: Dict[str, CacheEntry] = {}
        self._metadata_loaded = False
        self._metadata_dirty = False
        self._inflight: Dict[Tuple[str, Digest], asyncio.Future] = {}
        self._path_locks: Dict[str, asyncio.Lock] = {}

    # --- Paths ---

    def path_for(self, ref: ArtifactRef) -> pathlib.Path:
        return self.resolve_path(ref.path)

    def resolve_path(self, path: str) -> pathlib.Path:
        """Maps a logical artifact path to a file under the store root."""
        rel = pathlib.PurePosixPath(path)
        if not rel.parts or rel.is_absolute() or '..' in rel.parts or rel.parts[0] == METADATA_DIR:
            raise UnsafePath(path)
        return self.root.joinpath(*rel.parts)

    @property
    def metadata_path(self) -> pathlib.Path:
        return self.root / METADATA_DIR / METADATA_FILE

    def _lock_for(self, path: str) -> asyncio.Lock:
        lock = self._path_locks.get(path)
        if lock is None:
            lock = self._path_locks[path] = asyncio.Lock()
        return lock

    # --- Metadata ---

    def _ensure_metadata(self) -> None:
        if self._metadata_loaded:
            return
        self._metadata_loaded = True
        try:
            with open(self.metadata_path, 'r', encoding='utf-8') as f:
                raw = json.load(f)
            for item in raw.get('entries', []):
                entry = CacheEntry.from_json(item)
                self._entries[entry.path] = entry
            log.debug(f"Loaded {len(self._entries)} store metadata entries")
        except FileNotFoundError:
            pass
        except (OSError, ValueError, KeyError, TypeError) as e:
            # The index only ever speeds things up; an unreadable one is rebuilt.
            log.warning(f"Ignoring unreadable store metadata {self.metadata_path}: {e}")
            self._entries.clear()

    def entry(self, ref: ArtifactRef) -> Optional[CacheEntry]:
        self._ensure_metadata()
        entry = self._entries.get(ref.path)
        if entry is not None and entry.digest == ref.digest:
            return entry
        return None

    def recorded(self, path: str) -> Optional[CacheEntry]:
        """The last verified record for ``path``, whatever digest it had."""
        self._ensure_metadata()
        return self._entries.get(path)

    def _record(self, ref: ArtifactRef, st: os.stat_result) -> CacheEntry:
        entry = CacheEntry(
            path=ref.path,
            digest=ref.digest,
            size=st.st_size,
            verified_at=time.time(),
            mtime_ns=st.st_mtime_ns,
        )
        self._entries[ref.path] = entry
        self._metadata_dirty = True
        return entry

    async def save_metadata(self) -> None:
        """Atomically rewrites the metadata index if anything changed."""
        if not self._metadata_dirty:
            return
        payload = json.dumps(
            {'version': 1, 'entries': [e.to_json() for e in sorted(self._entries.values(), key=lambda e: e.path)]},
            indent=1,
        )
        target = self.metadata_path
        tmp = target.with_name(f".{target.name}.{uuid.uuid4().hex}.part")
        try:
            await aiofiles.os.makedirs(target.parent, exist_ok=True)
            async with aiofiles.open(tmp, 'w', encoding='utf-8') as f:
                await f.write(payload)
            os.replace(tmp, target)
            self._metadata_dirty = False
        except OSError as e:
            raise IoFailure(target, e) from e
        finally:
            with contextlib.suppress(FileNotFoundError):
                os.remove(tmp)

    # --- Verification ---

    @staticmethod
    async def hash_file(path: pathlib.Path, digest: Digest) -> str:
        """Hashes a file in chunks with the algorithm of ``digest``."""
        hasher = digest.new_hasher()
        async with aiofiles.open(path, 'rb') as f:
            while True:
                chunk = await f.read(HASH_CHUNK_SIZE)
                if not chunk:
                    break
                hasher.update(chunk)
        return hasher.hexdigest()

    async def verify(self, ref: ArtifactRef) -> VerifyOutcome:
        """
        Returns whether ``ref`` is present with the expected digest.

        The first call per artifact re-hashes the file; later calls return the
        cached outcome, after checking that a valid file still exists. Missing
        or corrupt files are left in place.
        """
        outcome = self._outcomes.get(ref.key)
        if outcome is VerifyOutcome.VALID and not await aiofiles.os.path.isfile(self.path_for(ref)):
            log.warning(f"{ref.path} was removed after it was verified")
            self._forget_path(ref.path)
            outcome = None
        if outcome is not None:
            return outcome
        async with self._lock_for(ref.path):
            outcome = self._outcomes.get(ref.key)
            if outcome is None:
                outcome = await self._check(ref)
                self._outcomes[ref.key] = outcome
        if outcome is not VerifyOutcome.VALID:
            log.debug(f"{ref.path}: {outcome.value}")
        return outcome

    async def _check(self, ref: ArtifactRef) -> VerifyOutcome:
        self._ensure_metadata()
        path = self.path_for(ref)
        try:
            st = await aiofiles.os.stat(path)
        except FileNotFoundError:
            return VerifyOutcome.MISSING
        except OSError as e:
            raise IoFailure(path, e) from e
        if not stat.S_ISREG(st.st_mode):
            return VerifyOutcome.CORRUPT

        if self.trust_metadata:
            entry = self._entries.get(ref.path)
            if (entry is not None and entry.digest == ref.digest
                    and entry.size == st.st_size and entry.mtime_ns == st.st_mtime_ns):
                return VerifyOutcome.VALID

        try:
            actual = await self.hash_file(path, ref.digest)
        except OSError as e:
            raise IoFailure(path, e) from e
        if ref.digest.matches(actual):
            self._record(ref, st)
            return VerifyOutcome.VALID
        log.warning(f"Digest mismatch for existing file {ref.path}. Expected {ref.digest}, got {actual}.")
        return VerifyOutcome.CORRUPT

    async def has(self, ref: ArtifactRef) -> bool:
        return await self.verify(ref) is VerifyOutcome.VALID

    def invalidate(self, ref: ArtifactRef) -> None:
        """Forgets the cached outcome so the next ``verify`` re-hashes."""
        self._outcomes.pop(ref.key, None)

    async def discard(self, ref: ArtifactRef) -> None:
        """Deletes the file at ``ref``'s path together with its metadata."""
        path = self.path_for(ref)
        async with self._lock_for(ref.path):
            try:
                await aiofiles.os.remove(path)
                log.info(f"Discarded {ref.path}")
            except FileNotFoundError:
                pass
            except OSError as e:
                raise IoFailure(path, e) from e
            self._forget_path(ref.path)

    def _forget_path(self, path: str) -> None:
        for key in [k for k in self._outcomes if k[0] == path]:
            del self._outcomes[key]
        self._ensure_metadata()
        if self._entries.pop(path, None) is not None:
            self._metadata_dirty = True

    async def read_bytes(self, ref: ArtifactRef) -> bytes:
        path = self.path_for(ref)
        try:
            async with aiofiles.open(path, 'rb') as f:
                return await f.read()
        except OSError as e:
            raise IoFailure(path, e) from e

    # --- Writing ---

    async def put(self, ref: ArtifactRef, chunks: AsyncIterable[bytes]) -> CacheEntry:
        """
        Streams ``chunks`` into the store under ``ref``.

        Bytes go to a temporary file next to the destination and are hashed on
        the way; only a matching digest is renamed into place. Concurrent puts
        of the same artifact share the first writer's result.

        Raises:
            DigestMismatch: the streamed bytes hash to something else.
            IoFailure: the file could not be written.
        """
        pending = self._inflight.get(ref.key)
        while pending is not None:
            log.debug(f"Waiting for in-flight write of {ref.path}")
            await asyncio.wait({pending})
            if not pending.cancelled():
                return pending.result()
            # The first writer was cancelled; take over if nobody else has.
            pending = self._inflight.get(ref.key)

        future = asyncio.get_running_loop().create_future()
        # Nobody may be waiting; avoid "exception was never retrieved" noise.
        future.add_done_callback(lambda f: f.cancelled() or f.exception())
        self._inflight[ref.key] = future
        try:
            async with self._lock_for(ref.path):
                entry = await self._write(ref, chunks)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except BaseException as e:
            future.set_exception(e)
            raise
        else:
            future.set_result(entry)
            return entry
        finally:
            del self._inflight[ref.key]

    async def _write(self, ref: ArtifactRef, chunks: AsyncIterable[bytes]) -> CacheEntry:
        dest = self.path_for(ref)
        tmp = dest.with_name(f".{dest.name}.{uuid.uuid4().hex}.part")
        hasher = ref.digest.new_hasher()
        size = 0
        try:
            try:
                await aiofiles.os.makedirs(dest.parent, exist_ok=True)
                f = await aiofiles.open(tmp, 'wb')
            except OSError as e:
                raise IoFailure(dest, e) from e
            try:
                # Errors raised by the source (network) propagate untouched so
                # callers can tell them apart from local I/O failures.
                async for chunk in chunks:
                    hasher.update(chunk)
                    size += len(chunk)
                    try:
                        await f.write(chunk)
                    except OSError as e:
                        raise IoFailure(tmp, e) from e
            finally:
                await f.close()
            actual = hasher.hexdigest()
            if not ref.digest.matches(actual):
                raise DigestMismatch(ref, actual)
            # No await between the digest check and the rename.
            try:
                os.replace(tmp, dest)
                st = os.stat(dest)
            except OSError as e:
                raise IoFailure(dest, e) from e
        finally:
            with contextlib.suppress(FileNotFoundError):
                os.remove(tmp)

        if ref.size is not None and ref.size != size:
            log.warning(f"{ref.path}: digest matches but size is {size}, manifest says {ref.size}")
        self._forget_path(ref.path)
        entry = self._record(ref, st)
        self._outcomes[ref.key] = VerifyOutcome.VALID
        log.debug(f"Stored {ref.path} ({size} bytes)")
        return entry
