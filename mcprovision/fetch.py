"""
Bounded-concurrency download of artifacts into the store.

A fixed pool of worker tasks drains one queue, so extra work waits instead of
spawning more transfers. Every artifact is checked against the store before
any request is made; a run over a complete store touches no network at all.
"""
import asyncio
import collections
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set, Tuple

import aiohttp

from .config import default_concurrency
from .credentials import CredentialAdapter
from .errors import (AuthError, DigestMismatch, ExhaustedRetries, FetchCancelled,
                     FetchFailed, ProvisionError, Unauthenticated)
from .models import ArtifactRef, VerifyOutcome
from .net import CHUNK_SIZE, HttpClient, HttpStatusError, is_transient, retry
from .progress import CancelToken, NullProgressSink, ProgressEvent, ProgressSink, ProgressStatus
from .store import ArtifactStore

log = logging.getLogger(__name__)

AUTH_REJECTED = (401, 403)


@dataclass
class FetchSummary:
    total: int = 0
    downloaded: int = 0
    skipped: int = 0
    bytes_downloaded: int = 0


class _Run:
    """Mutable bookkeeping for one ``fetch_all`` call."""

    def __init__(self, refs: List[ArtifactRef], progress: ProgressSink, cancel: CancelToken):
        self.queue: 'asyncio.Queue[Tuple[ArtifactRef, bool]]' = asyncio.Queue()
        for ref in refs:
            self.queue.put_nowait((ref, False))
        self.progress = progress
        self.cancel = cancel
        self.summary = FetchSummary(total=len(refs))
        self.failures: Dict[ArtifactRef, BaseException] = {}
        self.finished: Set[ArtifactRef] = set()

    @property
    def completed(self) -> int:
        return self.summary.downloaded + self.summary.skipped

    def publish(self, artifact_id: Optional[str], bytes_done: int = 0, bytes_total: Optional[int] = None,
                status: ProgressStatus = ProgressStatus.IN_PROGRESS, reason: Optional[str] = None,
                skipped: bool = False) -> None:
        self.progress.publish(ProgressEvent(
            artifact_id=artifact_id,
            bytes_done=bytes_done,
            bytes_total=bytes_total,
            status=status,
            reason=reason,
            completed=self.completed,
            total=self.summary.total,
            skipped=skipped,
        ))

    def finish(self, ref: ArtifactRef, size: int, skipped: bool) -> None:
        if ref in self.finished:
            return
        self.finished.add(ref)
        if skipped:
            self.summary.skipped += 1
        else:
            self.summary.downloaded += 1
        self.publish(ref.artifact_id, size, ref.size, ProgressStatus.COMPLETED, skipped=skipped)

    def fail(self, ref: ArtifactRef, error: BaseException) -> None:
        if ref in self.finished:
            log.debug(f"Ignoring late error for stored {ref.path}: {error!r}")
            return
        log.error(f"Failed to fetch {ref.path}: {error}")
        self.failures[ref] = error
        self.publish(ref.artifact_id, 0, ref.size, ProgressStatus.FAILED, reason=str(error))


class FetchOrchestrator:

    def __init__(
        self,
        store: ArtifactStore,
        http: HttpClient,
        *,
        credentials: Optional[CredentialAdapter] = None,
        concurrency: Optional[int] = None,
        max_retries: int = 4,
        retry_backoff: float = 0.5,
        chunk_size: int = CHUNK_SIZE,
    ):
        self.store = store
        self.http = http
        self.credentials = credentials
        self.concurrency = concurrency or default_concurrency()
        if self.concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self.chunk_size = chunk_size

    async def fetch_all(
        self,
        refs: Iterable[ArtifactRef],
        progress: Optional[ProgressSink] = None,
        cancel: Optional[CancelToken] = None,
    ) -> FetchSummary:
        """
        Makes every artifact in ``refs`` valid in the store.

        Raises:
            FetchCancelled: ``cancel`` was triggered; artifacts finished so far
                stay valid, unfinished ones leave nothing behind.
            Unauthenticated: the credential was rejected even after a refresh.
            FetchFailed: at least one artifact could not be fetched.
        """
        unique = list(collections.OrderedDict((ref.key, ref) for ref in refs).values())
        cancel = cancel if cancel is not None else CancelToken()
        run = _Run(unique, progress if progress is not None else NullProgressSink(), cancel)
        log.info(f"Fetching {len(unique)} artifacts with up to {self.concurrency} concurrent downloads")

        loop = asyncio.get_running_loop()
        stop = asyncio.Event()
        unregister = cancel.add_callback(lambda: loop.call_soon_threadsafe(stop.set))
        if cancel.cancelled:
            stop.set()

        workers = [
            asyncio.ensure_future(self._worker(run))
            for _ in range(min(self.concurrency, len(unique)))
        ]
        stopper = asyncio.ensure_future(stop.wait())
        try:
            pending = set(workers)
            while pending and not stop.is_set():
                done, _ = await asyncio.wait(pending | {stopper}, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    if task is stopper or task.cancelled():
                        continue
                    error = task.exception()
                    if error is not None:
                        raise error
                pending -= done
        finally:
            unregister()
            stopper.cancel()
            for task in workers:
                task.cancel()
            await asyncio.gather(stopper, *workers, return_exceptions=True)
            await self.store.save_metadata()

        if cancel.cancelled:
            run.publish(None, status=ProgressStatus.CANCELLED, reason='cancelled')
            log.warning(f"Fetch cancelled after {run.completed}/{len(unique)} artifacts")
            raise FetchCancelled(run.completed, len(unique))
        if run.failures:
            run.publish(None, status=ProgressStatus.FAILED, reason=f"{len(run.failures)} artifact(s) failed")
            raise FetchFailed(run.failures)

        run.publish(None, run.summary.bytes_downloaded, status=ProgressStatus.COMPLETED)
        log.info(f"Fetch complete: {run.summary.downloaded} downloaded, {run.summary.skipped} already present")
        return run.summary

    # --- Workers ---

    async def _worker(self, run: _Run) -> None:
        while not run.cancel.cancelled:
            try:
                ref, requeued = run.queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            await self._process(run, ref, requeued)

    async def _process(self, run: _Run, ref: ArtifactRef, requeued: bool) -> None:
        try:
            if not requeued:
                outcome = await self.store.verify(ref)
                if outcome is VerifyOutcome.VALID:
                    log.debug(f"Already present: {ref.path}")
                    run.finish(ref, ref.size or 0, skipped=True)
                    return
                if outcome is VerifyOutcome.CORRUPT:
                    log.info(f"Replacing corrupt {ref.path}")
            await self._download(run, ref)
        except DigestMismatch as e:
            if requeued:
                run.fail(ref, e)
            else:
                log.warning(f"{e}. Re-queuing once.")
                run.queue.put_nowait((ref, True))
            return
        except Unauthenticated:
            raise
        except (ProvisionError, HttpStatusError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            run.fail(ref, e)

    async def _download(self, run: _Run, ref: ArtifactRef) -> int:
        attempts = self.max_retries + 1
        try:
            return await retry(
                lambda: self._authorized_transfer(run, ref),
                attempts=attempts, backoff=self.retry_backoff, description=ref.url,
            )
        except (HttpStatusError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            if is_transient(e):
                raise ExhaustedRetries(ref, attempts, e) from e
            raise

    async def _authorized_transfer(self, run: _Run, ref: ArtifactRef) -> int:
        if not ref.authenticated:
            return await self._transfer(run, ref, None)
        if self.credentials is None:
            raise Unauthenticated(AuthError(f"{ref.url} requires a credential and none was configured"))

        try:
            credential = await self.credentials.credential()
        except AuthError as e:
            raise Unauthenticated(e) from e
        try:
            return await self._transfer(run, ref, _bearer(credential.token))
        except HttpStatusError as e:
            if e.status not in AUTH_REJECTED:
                raise
            log.warning(f"{ref.url} rejected the credential (HTTP {e.status}), refreshing once")
            try:
                credential = await self.credentials.force_refresh(credential)
            except AuthError as auth_error:
                raise Unauthenticated(auth_error) from auth_error

        try:
            return await self._transfer(run, ref, _bearer(credential.token))
        except HttpStatusError as e:
            if e.status in AUTH_REJECTED:
                raise Unauthenticated(e) from e
            raise

    async def _transfer(self, run: _Run, ref: ArtifactRef, headers: Optional[Dict[str, str]]) -> int:
        """
        One download attempt; returns the number of bytes stored.

        The artifact is counted as finished as soon as the store has renamed it
        into place, before the response is released.
        """
        log.debug(f"Downloading {ref.url} -> {ref.path}")
        async with self.http.stream(ref.url, headers=headers) as response:
            total = ref.size if ref.size is not None else response.content_length
            done = 0

            async def _chunks():
                nonlocal done
                async for chunk in response.iter_chunks(self.chunk_size):
                    # Checked between chunks; the store discards the partial file.
                    if run.cancel.cancelled:
                        raise asyncio.CancelledError()
                    done += len(chunk)
                    run.summary.bytes_downloaded += len(chunk)
                    run.publish(ref.artifact_id, done, total)
                    yield chunk

            await self.store.put(ref, _chunks())
            run.finish(ref, done, skipped=False)
        return done


def _bearer(token: str) -> Dict[str, str]:
    return {'Authorization': f"Bearer {token}"}
