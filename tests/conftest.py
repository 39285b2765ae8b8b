"""Shared test fixtures for mcprovision."""
import asyncio
import contextlib
import hashlib
import json
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, Union

import aiohttp
import pytest

from mcprovision.models import ArtifactKind, ArtifactRef, Digest
from mcprovision.net import HttpStatusError
from mcprovision.rules import PlatformFacts
from mcprovision.store import ArtifactStore

BASE_URL = 'https://example.test'
VERSION_LIST_URL = f"{BASE_URL}/mc/game/version_manifest_v2.json"
RESOURCES_URL = f"{BASE_URL}/resources"

Body = Union[bytes, Callable[[Optional[Dict[str, str]]], bytes]]


def sha1(data: bytes) -> str:
    return hashlib.sha1(data).hexdigest()


class FakeResponse:

    def __init__(self, body: bytes, chunk_size: int = 4):
        self.body = body
        self.status = 200
        self.content_length = len(body)
        self._chunk_size = chunk_size

    async def read(self) -> bytes:
        return self.body

    async def iter_chunks(self, chunk_size: int = 0):
        size = self._chunk_size
        for i in range(0, len(self.body), size):
            await asyncio.sleep(0)
            yield self.body[i:i + size]


class FakeHttp:
    """
    In-memory stand-in for ``HttpClient``.

    Routes map a URL to bytes, to a callable taking the request headers, or to
    a list of bodies served in turn (the last one repeats).
    ``on_release`` is awaited with the URL after a response is consumed
    without error, before the stream is released.
    """

    def __init__(self, *, delay: float = 0.0, chunk_size: int = 4):
        self.routes: Dict[str, Union[Body, List[Body]]] = {}
        self.errors: Dict[str, List[BaseException]] = {}
        self.requests: List[Tuple[str, Optional[Dict[str, str]]]] = []
        self.delay = delay
        self.chunk_size = chunk_size
        self.offline = False
        self.block_after: Optional[int] = None
        self.in_flight = 0
        self.max_in_flight = 0
        self.on_release: Optional[Callable[[str], Awaitable[None]]] = None

    def add(self, url: str, body: Union[Body, List[Body]]) -> str:
        self.routes[url] = body
        return url

    def fail(self, url: str, *errors: BaseException) -> None:
        self.errors.setdefault(url, []).extend(errors)

    def count(self, url: str) -> int:
        return sum(1 for requested, _ in self.requests if requested == url)

    def _body(self, url: str, headers: Optional[Dict[str, str]]) -> bytes:
        route = self.routes.get(url)
        if route is None:
            raise HttpStatusError(url, 404, 'Not Found')
        if isinstance(route, list):
            route = route.pop(0) if len(route) > 1 else route[0]
        if callable(route):
            return route(headers)
        return route

    @contextlib.asynccontextmanager
    async def stream(self, url: str, *, headers: Optional[Dict[str, str]] = None):
        self.requests.append((url, headers))
        number = len(self.requests)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.offline:
                raise aiohttp.ClientConnectionError(f"Cannot connect to {url}")
            if self.block_after is not None and number > self.block_after:
                await asyncio.Event().wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            pending = self.errors.get(url)
            if pending:
                raise pending.pop(0)
            yield FakeResponse(self._body(url, headers), self.chunk_size)
            if self.on_release is not None:
                await self.on_release(url)
        finally:
            self.in_flight -= 1

    async def get_bytes(self, url: str, *, headers: Optional[Dict[str, str]] = None) -> bytes:
        async with self.stream(url, headers=headers) as response:
            return await response.read()


def make_ref(path: str, body: bytes, *, kind: ArtifactKind = ArtifactKind.LIBRARY, url: Optional[str] = None,
             authenticated: bool = False) -> ArtifactRef:
    return ArtifactRef(
        path=path,
        digest=Digest.sha1(sha1(body)),
        url=url or f"{BASE_URL}/files/{path}",
        size=len(body),
        kind=kind,
        authenticated=authenticated,
    )


# --- Manifest builders ---

def library(name: str, body: bytes, *, rules: Optional[list] = None, path: Optional[str] = None) -> Dict[str, Any]:
    group, artifact, version = name.split(':')[:3]
    path = path or f"{group.replace('.', '/')}/{artifact}/{version}/{artifact}-{version}.jar"
    lib: Dict[str, Any] = {
        'name': name,
        'downloads': {
            'artifact': {'path': path, 'url': f"{BASE_URL}/libraries/{path}", 'sha1': sha1(body), 'size': len(body)},
        },
    }
    if rules is not None:
        lib['rules'] = rules
    return lib


def version_doc(version_id: str, *, inherits: Optional[str] = None, libraries: Sequence[Dict[str, Any]] = (),
                client: Optional[bytes] = None, main_class: Optional[str] = None,
                asset_index: Optional[Tuple[str, bytes]] = None, **extra: Any) -> Dict[str, Any]:
    doc: Dict[str, Any] = {'id': version_id, 'type': 'release', 'libraries': list(libraries)}
    if inherits:
        doc['inheritsFrom'] = inherits
    if main_class:
        doc['mainClass'] = main_class
    if client is not None:
        doc['downloads'] = {'client': {'url': f"{BASE_URL}/client/{version_id}.jar", 'sha1': sha1(client), 'size': len(client)}}
    if asset_index is not None:
        index_id, index_body = asset_index
        doc['assetIndex'] = {'id': index_id, 'url': f"{BASE_URL}/indexes/{index_id}.json", 'sha1': sha1(index_body),
                             'size': len(index_body), 'totalSize': 0}
        doc['assets'] = index_id
    doc.update(extra)
    return doc


def asset_index_body(objects: Dict[str, bytes]) -> bytes:
    return json.dumps({'objects': {name: {'hash': sha1(body), 'size': len(body)} for name, body in objects.items()}}).encode()


def publish(http: FakeHttp, docs: Sequence[Dict[str, Any]], *, latest: Optional[Dict[str, str]] = None,
            unlisted: Sequence[str] = ()) -> None:
    """Serves ``docs`` and a version list naming every doc except ``unlisted``."""
    entries = []
    for doc in docs:
        data = json.dumps(doc).encode()
        url = http.add(f"{BASE_URL}/v1/packages/{doc['id']}.json", data)
        if doc['id'] not in unlisted:
            entries.append({'id': doc['id'], 'type': doc.get('type', 'release'), 'url': url, 'sha1': sha1(data)})
    version_list = {'latest': latest or {}, 'versions': entries}
    http.add(VERSION_LIST_URL, json.dumps(version_list).encode())


@pytest.fixture
def facts() -> PlatformFacts:
    return PlatformFacts(os_name='linux', arch='x64', os_version='6.1.0')


@pytest.fixture
def store_root(tmp_path: Path) -> Path:
    return tmp_path / '.minecraft'


@pytest.fixture
def store(store_root: Path) -> ArtifactStore:
    return ArtifactStore(store_root)


@pytest.fixture
def http() -> FakeHttp:
    return FakeHttp()
