import asyncio
import json
import logging
import os
import pathlib
import platform
import shutil
import tarfile
import zipfile
from typing import Any, Dict, List, Optional

import aiofiles.os
import aiohttp

from .errors import ExtractionFailure, JavaNotFound, MalformedManifest
from .fetch import FetchOrchestrator
from .models import ArtifactKind, ArtifactRef, Digest
from .net import HttpClient, HttpStatusError, retry
from .progress import CancelToken, ProgressSink
from .rules import PlatformFacts
from .store import ArtifactStore

log = logging.getLogger(__name__)

# --- Configuration ---
ADOPTIUM_API_BASE = 'https://api.adoptium.net/v3'
DEFAULT_JAVA_VERSION = 17
DEFAULT_IMAGE_TYPE = 'jre'
RUNTIMES_DIR = 'runtimes'


def get_api_os_arch(facts: PlatformFacts) -> Dict[str, str]:
    """Maps platform facts to Adoptium API values."""
    api_os = {'windows': 'windows', 'osx': 'mac', 'linux': 'linux'}.get(facts.os_name)
    api_arch = {'x64': 'x64', 'arm64': 'aarch64', 'x86': 'x32', 'arm32': 'arm'}.get(facts.arch)
    if api_os is None or api_arch is None:
        raise JavaNotFound(f"No Java builds are published for {facts.os_name}-{facts.arch}")
    return {'os': api_os, 'arch': api_arch}


def _executable_in(base_dir: pathlib.Path, system: str) -> pathlib.Path:
    if system == 'Windows':
        return base_dir / 'bin' / 'java.exe'
    elif system == 'Darwin':
        return base_dir / 'Contents' / 'Home' / 'bin' / 'java'
    else:  # Linux
        return base_dir / 'bin' / 'java'


async def find_java_executable(extract_dir: pathlib.Path, system: Optional[str] = None) -> Optional[pathlib.Path]:
    """
    Finds the Java executable inside an extracted runtime.

    Archives usually unpack into a single top-level directory, so the first
    subdirectory is checked before ``extract_dir`` itself.
    """
    system = system or platform.system()
    if not await aiofiles.os.path.isdir(extract_dir):
        return None

    candidates: List[pathlib.Path] = []
    try:
        for entry in sorted(os.scandir(extract_dir), key=lambda e: e.name):
            if entry.is_dir():
                candidates.append(_executable_in(pathlib.Path(entry.path), system))
                break
    except OSError as e:
        log.warning(f"Could not scan directory {extract_dir}: {e}")
    candidates.append(_executable_in(extract_dir, system))

    for path in candidates:
        if await aiofiles.os.path.isfile(path):
            if os.access(path, os.X_OK):
                log.debug(f"Found Java executable: {path}")
                return path.resolve()
            log.warning(f"File found but not executable: {path}")
    return None


def parse_adoptium_assets(data: bytes, source: str) -> ArtifactRef:
    """Turns an Adoptium ``assets/latest`` response into a runtime artifact."""
    try:
        releases = json.loads(data.decode('utf-8'))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedManifest(source, f"invalid JSON: {e}")
    if not isinstance(releases, list) or not releases:
        raise JavaNotFound(f"No Java build listed at {source}")
    try:
        package: Dict[str, Any] = releases[0]['binary']['package']
        name = package['name']
        return ArtifactRef(
            path=f"{RUNTIMES_DIR}/archives/{name}",
            digest=Digest.sha256(package['checksum']),
            url=package['link'],
            size=package.get('size'),
            kind=ArtifactKind.RUNTIME,
        )
    except (KeyError, IndexError, TypeError, ValueError) as e:
        raise MalformedManifest(source, f"unexpected release layout: {e!r}")


async def resolve_runtime(
    http: HttpClient,
    version: int,
    facts: PlatformFacts,
    image_type: str = DEFAULT_IMAGE_TYPE,
    *,
    vendor: str = 'eclipse',
    jvm_impl: str = 'hotspot',
    max_retries: int = 4,
    retry_backoff: float = 0.5,
) -> ArtifactRef:
    platform_info = get_api_os_arch(facts)
    api_url = (
        f"{ADOPTIUM_API_BASE}/assets/latest/{version}/{jvm_impl}"
        f"?architecture={platform_info['arch']}&image_type={image_type}&os={platform_info['os']}&vendor={vendor}"
    )
    log.info(f"Looking up Java {version} ({image_type}) for {platform_info['os']}-{platform_info['arch']}")
    try:
        data = await retry(lambda: http.get_bytes(api_url), attempts=max_retries + 1, backoff=retry_backoff,
                           description=api_url)
    except (HttpStatusError, aiohttp.ClientError, asyncio.TimeoutError) as e:
        raise JavaNotFound(f"Could not look up Java {version} at {api_url}: {e}") from e
    return parse_adoptium_assets(data, api_url)


def _check_member(dest_root: pathlib.Path, name: str, archive: pathlib.Path) -> None:
    target = (dest_root / name).resolve()
    if target != dest_root and dest_root not in target.parents:
        raise ExtractionFailure(archive, f"member {name!r} escapes {dest_root}")


def _extract_zip(archive: pathlib.Path, dest_path: pathlib.Path):
    dest_root = dest_path.resolve()
    with zipfile.ZipFile(archive, 'r') as zip_ref:
        for member in zip_ref.infolist():
            _check_member(dest_root, member.filename, archive)
        zip_ref.extractall(dest_root)


def _extract_tar(archive: pathlib.Path, dest_path: pathlib.Path):
    dest_root = dest_path.resolve()
    with tarfile.open(archive, 'r:gz') as tar_ref:
        members = tar_ref.getmembers()
        for member in members:
            _check_member(dest_root, member.name, archive)
            if member.issym() or member.islnk():
                _check_member(dest_root, os.path.join(os.path.dirname(member.name), member.linkname), archive)
        tar_ref.extractall(path=dest_root, members=members)


async def extract_runtime(archive: pathlib.Path, dest_path: pathlib.Path) -> None:
    """Unpacks a zip or tar.gz runtime archive into a clean ``dest_path``."""
    loop = asyncio.get_running_loop()
    staging = dest_path.with_name(dest_path.name + '.extracting')
    await loop.run_in_executor(None, lambda: shutil.rmtree(staging, ignore_errors=True))
    await aiofiles.os.makedirs(staging, exist_ok=True)
    extractor = _extract_zip if archive.name.endswith('.zip') else _extract_tar
    log.info(f"Extracting {archive.name} to {dest_path}...")
    try:
        await loop.run_in_executor(None, extractor, archive, staging)
        await loop.run_in_executor(None, lambda: shutil.rmtree(dest_path, ignore_errors=True))
        os.replace(staging, dest_path)
    except ExtractionFailure:
        raise
    except (zipfile.BadZipFile, tarfile.TarError, OSError) as e:
        raise ExtractionFailure(archive, e) from e
    finally:
        await loop.run_in_executor(None, lambda: shutil.rmtree(staging, ignore_errors=True))


async def ensure_java(
    version: Optional[int],
    orchestrator: FetchOrchestrator,
    http: HttpClient,
    store: ArtifactStore,
    facts: PlatformFacts,
    *,
    java_path: Optional[str] = None,
    image_type: str = DEFAULT_IMAGE_TYPE,
    progress: Optional[ProgressSink] = None,
    cancel: Optional[CancelToken] = None,
) -> str:
    """
    Returns a Java executable for ``version``.

    An explicit ``java_path`` wins. Otherwise a runtime already unpacked under
    ``runtimes/`` is reused, or one is downloaded, verified through the store
    and unpacked.
    """
    if java_path:
        log.info(f"Using configured Java executable: {java_path}")
        return java_path

    version = version or DEFAULT_JAVA_VERSION
    system = {'windows': 'Windows', 'osx': 'Darwin'}.get(facts.os_name, 'Linux')
    runtime_dir = store.root / RUNTIMES_DIR / f"java-{version}-{image_type}"

    existing = await find_java_executable(runtime_dir, system)
    if existing is not None:
        log.info(f"Using installed Java {version} at {existing}")
        return str(existing)

    ref = await resolve_runtime(http, version, facts, image_type,
                                max_retries=orchestrator.max_retries, retry_backoff=orchestrator.retry_backoff)
    await orchestrator.fetch_all([ref], progress=progress, cancel=cancel)
    await extract_runtime(store.path_for(ref), runtime_dir)

    java = await find_java_executable(runtime_dir, system)
    if java is None:
        raise JavaNotFound(f"Extracted {ref.path} but found no Java executable in {runtime_dir}")
    log.info(f"Java {version} installed at {java}")
    return str(java)
