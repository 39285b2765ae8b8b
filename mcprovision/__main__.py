# python -m mcprovision [version]
import argparse
import asyncio
import contextlib
import logging
import pathlib
import signal
import sys
from typing import Awaitable, Callable, Dict, TypeVar

from tqdm.asyncio import tqdm  # Use tqdm's async version

from .config import LAUNCHER_CONFIG_FILENAME, USER_CONFIG_FILENAME, ConfigError, load_launcher_config, load_user_config
from .credentials import CredentialAdapter, OfflineCredentialProvider
from .errors import FetchCancelled, ProvisionError
from .fetch import FetchOrchestrator
from .java import ensure_java
from .launch import LaunchAssembler, LaunchOptions, remove_natives, start
from .net import HttpClient
from .progress import CancelToken, ProgressStatus, QueueProgressSink
from .resolver import ManifestResolver
from .rules import PlatformFacts
from .store import ArtifactStore

log = logging.getLogger(__name__)

T = TypeVar('T')


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog='mcprovision', description='Download, verify and launch a game version.')
    parser.add_argument('version', nargs='?', help="version id, 'release' or 'snapshot' (default: from launcher config)")
    parser.add_argument('--config', type=pathlib.Path, default=pathlib.Path.cwd() / LAUNCHER_CONFIG_FILENAME,
                        help=f"path to {LAUNCHER_CONFIG_FILENAME}")
    parser.add_argument('--no-launch', action='store_true', help='stop after every artifact is fetched and verified')
    parser.add_argument('-v', '--verbose', action='store_true', help='debug logging')
    return parser.parse_args(argv)


# --- Progress rendering ---

async def _render_progress(sink: QueueProgressSink, desc: str) -> None:
    files = None
    data = tqdm(total=0, desc='Downloaded', unit='B', unit_scale=True, unit_divisor=1024, leave=False)
    seen: Dict[str, int] = {}
    try:
        async for event in sink:
            if files is None and event.total:
                files = tqdm(total=event.total, desc=desc, unit='file', leave=False)
            if event.artifact_id is not None and event.status is ProgressStatus.IN_PROGRESS:
                previous = seen.get(event.artifact_id, 0)
                # A retry starts the artifact over.
                delta = event.bytes_done - previous if event.bytes_done >= previous else event.bytes_done
                seen[event.artifact_id] = event.bytes_done
                data.update(delta)
            if files is not None and files.n != event.completed:
                files.update(event.completed - files.n)
            if event.final:
                break
    finally:
        if files is not None:
            files.close()
        data.close()
        if sink.dropped:
            log.debug(f"{sink.dropped} progress updates were dropped")


async def _with_progress(operation: Callable[[QueueProgressSink], Awaitable[T]], buffer_size: int, desc: str) -> T:
    sink = QueueProgressSink(buffer_size)
    renderer = asyncio.ensure_future(_render_progress(sink, desc))
    try:
        return await operation(sink)
    finally:
        sink.close()
        await renderer


@contextlib.contextmanager
def _interrupt_cancels(cancel: CancelToken):
    """Turns Ctrl-C into a cooperative cancel while downloads run."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel.cancel)
        installed = True
    except (NotImplementedError, RuntimeError):  # Windows event loops
        installed = False
    try:
        yield
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


# --- Main flow ---

async def run(args: argparse.Namespace) -> int:
    config = load_launcher_config(args.config)
    user = load_user_config(pathlib.Path(args.config).resolve().parent / USER_CONFIG_FILENAME)
    version = args.version or config.version

    facts = PlatformFacts.current()
    log.info(f"Detected OS: {facts.os_name}, Arch: {facts.arch}")
    log.info(f"Game directory: {config.minecraft_dir}")

    store = ArtifactStore(config.minecraft_dir, trust_metadata=config.trust_store_metadata)
    credentials = CredentialAdapter(OfflineCredentialProvider(user))
    cancel = CancelToken()

    async with HttpClient() as http:
        # 1. Resolve the version and its parents
        resolver = ManifestResolver(
            http, store,
            facts=facts,
            version_manifest_url=config.version_manifest_url,
            resources_url=config.resources_url,
            artifact_gateway_url=config.artifact_gateway_url,
            max_depth=config.max_inheritance_depth,
            max_retries=config.max_retries,
            retry_backoff=config.retry_backoff,
        )
        resolved = await resolver.resolve(version)

        # 2. Fetch and verify every artifact
        orchestrator = FetchOrchestrator(
            store, http,
            credentials=credentials,
            concurrency=config.concurrency,
            max_retries=config.max_retries,
            retry_backoff=config.retry_backoff,
        )
        with _interrupt_cancels(cancel):
            await _with_progress(
                lambda sink: orchestrator.fetch_all(resolved.artifacts, progress=sink, cancel=cancel),
                config.progress_buffer, resolved.id,
            )
            if args.no_launch:
                log.info(f"{resolved.id} is installed and verified.")
                return 0

            # 3. Java runtime
            java = await _with_progress(
                lambda sink: ensure_java(
                    resolved.java_major, orchestrator, http, store, facts,
                    java_path=config.java_path, image_type=config.java_image_type,
                    progress=sink, cancel=cancel,
                ),
                config.progress_buffer, 'Java runtime',
            )

    # 4. Assemble the launch command
    options = LaunchOptions(
        java_executable=java,
        game_dir=config.minecraft_dir,
        demo=user.demo,
        resolution_width=user.resolution_width,
        resolution_height=user.resolution_height,
        jvm_args=user.jvm_args,
    )
    spec = await LaunchAssembler(store, facts=facts).assemble(resolved, credentials, options)

    # 5. Launch and wait
    process = await start(spec)
    try:
        return_code = await process.wait()
    finally:
        await remove_natives(spec.natives_dir)
    log.info(f"Game process exited with code {return_code}.")
    return return_code


def main(argv=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format='%(asctime)s - %(levelname)s - %(message)s')
    try:
        return asyncio.run(run(args))
    except FetchCancelled as e:
        log.warning(str(e))
        return 130
    except KeyboardInterrupt:
        log.info("Cancelled by user.")
        return 130
    except (ProvisionError, ConfigError) as e:
        log.error(str(e))
        return 1


# --- Script Entry Point ---
if __name__ == "__main__":
    sys.exit(main())
