"""
Builds the concrete launch command for a resolved and fully fetched version.

Nothing here touches the network. Every artifact must already verify as
valid in the store; natives are unpacked into a fresh per-launch directory.
"""
import asyncio
import logging
import os
import pathlib
import shutil
import uuid
import zipfile
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import aiofiles.os

from . import LAUNCHER_NAME, LAUNCHER_VERSION
from .credentials import CredentialAdapter
from .errors import ExtractionFailure, IncompleteInstall, MalformedManifest
from .models import Credential, LaunchSpec, ResolvedVersion, VerifyOutcome
from .replacer import substitute, substitute_all
from .rules import PlatformFacts, enabled_features, interpret_arguments
from .store import ArtifactStore

log = logging.getLogger(__name__)

NATIVES_DIR = 'bin'
DEFAULT_EXTRACT_EXCLUDES = ('META-INF/',)

# Used when a version only has 'minecraftArguments'.
LEGACY_JVM_ARGUMENTS = (
    {
        'rules': [{'action': 'allow', 'os': {'name': 'osx'}}],
        'value': ['-XstartOnFirstThread'],
    },
    {
        'rules': [{'action': 'allow', 'os': {'name': 'windows'}}],
        'value': '-XX:HeapDumpPath=MojangTricksIntelDriversForPerformance_javaw.exe_minecraft.exe.heapdump',
    },
    {
        'rules': [{'action': 'allow', 'os': {'name': 'windows', 'version': '^10\\.'}}],
        'value': ['-Dos.name=Windows 10', '-Dos.version=10.0'],
    },
    '-Djava.library.path=${natives_directory}',
    '-Dminecraft.launcher.brand=${launcher_name}',
    '-Dminecraft.launcher.version=${launcher_version}',
    '-cp',
    '${classpath}',
)


@dataclass
class LaunchOptions:
    java_executable: str = 'java'
    game_dir: Optional[pathlib.Path] = None
    demo: bool = False
    resolution_width: Optional[str] = None
    resolution_height: Optional[str] = None
    jvm_args: List[str] = field(default_factory=list)
    # Extra ``${name}`` values, e.g. for loader-specific placeholders.
    replacements: Dict[str, str] = field(default_factory=dict)

    def feature_options(self) -> Dict[str, object]:
        return {
            'demo': self.demo,
            'resolution_width': self.resolution_width,
            'resolution_height': self.resolution_height,
        }


def _extract_zip_sync(archive: pathlib.Path, target_dir: pathlib.Path, excludes: Sequence[str]) -> int:
    target_root = target_dir.resolve()
    extracted = 0
    with zipfile.ZipFile(archive, 'r') as zip_ref:
        for member in zip_ref.infolist():
            if member.is_dir():
                continue
            if any(member.filename.startswith(prefix) for prefix in excludes):
                continue
            destination = (target_root / member.filename).resolve()
            if target_root not in destination.parents:
                raise ExtractionFailure(archive, f"member {member.filename!r} escapes the natives directory")
            zip_ref.extract(member, target_root)
            extracted += 1
    return extracted


async def extract_natives(archive: pathlib.Path, target_dir: pathlib.Path, excludes: Sequence[str] = ()) -> int:
    """Unpacks a natives archive, skipping META-INF/ and ``excludes``. Returns the file count."""
    excludes = tuple(DEFAULT_EXTRACT_EXCLUDES) + tuple(excludes)
    await aiofiles.os.makedirs(target_dir, exist_ok=True)
    loop = asyncio.get_running_loop()
    try:
        return await loop.run_in_executor(None, _extract_zip_sync, archive, target_dir, excludes)
    except ExtractionFailure:
        raise
    except (zipfile.BadZipFile, OSError, ValueError) as e:
        raise ExtractionFailure(archive, e) from e


class LaunchAssembler:

    def __init__(
        self,
        store: ArtifactStore,
        *,
        facts: Optional[PlatformFacts] = None,
        launcher_name: str = LAUNCHER_NAME,
        launcher_version: str = LAUNCHER_VERSION,
    ):
        self.store = store
        self.facts = facts or PlatformFacts.current()
        self.launcher_name = launcher_name
        self.launcher_version = launcher_version

    async def assemble(
        self,
        resolved: ResolvedVersion,
        credentials: CredentialAdapter,
        options: Optional[LaunchOptions] = None,
    ) -> LaunchSpec:
        """
        Produces the launch command for ``resolved``.

        Raises:
            IncompleteInstall: an artifact is missing or corrupt in the store.
            ExtractionFailure: a natives archive could not be unpacked.
            UnresolvedPlaceholder: an argument references an unknown ``${name}``.
        """
        options = options or LaunchOptions()
        await self._check_complete(resolved)
        credential = await credentials.credential()

        classpath = self.build_classpath(resolved)
        # Arguments first: nothing is written until every placeholder resolves.
        natives_dir = self.store.root / NATIVES_DIR / uuid.uuid4().hex
        game_dir = pathlib.Path(options.game_dir) if options.game_dir else self.store.root
        values = self._replacements(resolved, credential, classpath, natives_dir, game_dir, options)

        features = [name for name, on in enabled_features(options.feature_options()).items() if on]
        facts = self.facts.with_features(features)
        jvm_arguments = resolved.jvm_arguments
        if resolved.legacy or jvm_arguments is None:
            jvm_arguments = LEGACY_JVM_ARGUMENTS + tuple(jvm_arguments or ())
        try:
            jvm_templates = interpret_arguments(jvm_arguments, facts)
            game_templates = interpret_arguments(resolved.game_arguments, facts)
        except ValueError as e:
            raise MalformedManifest(resolved.id, f"arguments: {e}")

        jvm_args = list(options.jvm_args) + substitute_all(jvm_templates, values)
        if resolved.logging is not None and resolved.logging_argument:
            log_config = str(self.store.path_for(resolved.logging))
            jvm_args.append(substitute(resolved.logging_argument, {'path': log_config}))
        game_args = substitute_all(game_templates, values)

        log.info(f"Extracting natives to {natives_dir}")
        try:
            await aiofiles.os.makedirs(natives_dir, exist_ok=True)
            for lib in resolved.libraries:
                if lib.native:
                    count = await extract_natives(self.store.path_for(lib.ref), natives_dir, lib.extract_excludes)
                    log.debug(f"Extracted {count} files from {lib.ref.path}")
        except BaseException:
            await asyncio.shield(remove_natives(natives_dir))
            raise

        command = (options.java_executable, *jvm_args, resolved.main_class, *game_args)
        spec = LaunchSpec(
            command=command,
            classpath=tuple(classpath),
            natives_dir=natives_dir,
            working_dir=game_dir,
            main_class=resolved.main_class,
        )
        log.debug(f"Launch command: {spec.masked_command(credential.token)}")
        return spec

    async def _check_complete(self, resolved: ResolvedVersion) -> None:
        for ref in resolved.artifacts:
            outcome = await self.store.verify(ref)
            if outcome is not VerifyOutcome.VALID:
                raise IncompleteInstall(ref, outcome)

    def build_classpath(self, resolved: ResolvedVersion) -> List[str]:
        """Non-native libraries in declaration order, then the client jar."""
        entries: List[str] = []
        for lib in resolved.libraries:
            if not lib.native:
                entries.append(str(self.store.path_for(lib.ref)))
        if resolved.client is not None:
            entries.append(str(self.store.path_for(resolved.client)))
        return list(dict.fromkeys(entries))

    def _replacements(self, resolved: ResolvedVersion, credential: Credential, classpath: List[str],
                      natives_dir: pathlib.Path, game_dir: pathlib.Path, options: LaunchOptions) -> Dict[str, str]:
        assets_root = str(self.store.root / 'assets')
        values = {
            'natives_directory': str(natives_dir),
            'library_directory': str(self.store.root / 'libraries'),
            'classpath_separator': os.pathsep,
            'classpath': os.pathsep.join(classpath),
            'launcher_name': self.launcher_name,
            'launcher_version': self.launcher_version,
            'auth_player_name': credential.username,
            'version_name': resolved.id,
            'game_directory': str(game_dir),
            'assets_root': assets_root,
            'game_assets': assets_root,
            'assets_index_name': resolved.asset_index_id or '',
            'auth_uuid': credential.uuid,
            'auth_access_token': credential.token,
            'auth_session': f"token:{credential.token}:{credential.uuid}",
            'clientid': 'N/A',
            'auth_xuid': credential.xuid,
            'user_type': credential.user_type,
            'version_type': resolved.type,
            'user_properties': '{}',
        }
        if options.resolution_width and options.resolution_height:
            values['resolution_width'] = str(options.resolution_width)
            values['resolution_height'] = str(options.resolution_height)
        values.update(options.replacements)
        return values


async def start(spec: LaunchSpec) -> asyncio.subprocess.Process:
    """Starts the game process; supervising it is up to the caller."""
    log.info(f"Launching {spec.main_class} in {spec.working_dir}")
    await aiofiles.os.makedirs(spec.working_dir, exist_ok=True)
    process = await asyncio.create_subprocess_exec(
        *spec.command,
        cwd=str(spec.working_dir),
    )
    log.info(f"Game process started (PID: {process.pid})")
    return process


async def remove_natives(natives_dir: pathlib.Path) -> None:
    loop = asyncio.get_running_loop()
    await loop.run_in_executor(None, lambda: shutil.rmtree(natives_dir, ignore_errors=True))
