import json
import logging
import os
import pathlib
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .replacer import replace_text

log = logging.getLogger(__name__)

# --- Constants and Configuration ---
DEFAULT_VERSION = 'release'
VERSION_MANIFEST_URL = 'https://piston-meta.mojang.com/mc/game/version_manifest_v2.json'
RESOURCES_URL = 'https://resources.download.minecraft.net'
LAUNCHER_CONFIG_FILENAME = 'launcher_config.json'
USER_CONFIG_FILENAME = 'config.json'


def default_concurrency() -> int:
    return min(32, (os.cpu_count() or 1) * 2)


class ConfigError(ValueError):
    pass


@dataclass
class LauncherConfig:
    """Settings from launcher_config.json, with ``:thisdir:`` already patched."""
    basepath: pathlib.Path
    path: str = '.minecraft'
    version: str = DEFAULT_VERSION
    concurrency: int = field(default_factory=default_concurrency)
    max_retries: int = 4
    retry_backoff: float = 0.5
    max_inheritance_depth: int = 16
    version_manifest_url: str = VERSION_MANIFEST_URL
    resources_url: str = RESOURCES_URL
    # Serves versions/, libraries/ and assets/ paths in place of the upstream URLs.
    artifact_gateway_url: Optional[str] = None
    java_path: Optional[str] = None
    java_image_type: str = 'jre'
    trust_store_metadata: bool = False
    progress_buffer: int = 1024

    # --- Directories ---
    @property
    def minecraft_dir(self) -> pathlib.Path:
        return self.basepath / self.path

    @property
    def versions_dir(self) -> pathlib.Path:
        return self.minecraft_dir / 'versions'

    @property
    def assets_dir(self) -> pathlib.Path:
        return self.minecraft_dir / 'assets'

    @property
    def libraries_dir(self) -> pathlib.Path:
        return self.minecraft_dir / 'libraries'


@dataclass
class UserConfig:
    """Optional per-user settings from config.json."""
    auth_player_name: str = 'Player'
    auth_uuid: str = '00000000-0000-0000-0000-000000000000'
    auth_access_token: str = '00000000000000000000000000000000'
    auth_xuid: str = '0'
    demo: bool = False
    resolution_width: Optional[str] = None
    resolution_height: Optional[str] = None
    jvm_args: List[str] = field(default_factory=list)

    def options(self) -> Dict[str, Any]:
        return {
            'demo': self.demo,
            'resolution_width': self.resolution_width,
            'resolution_height': self.resolution_height,
        }


def load_launcher_config(config_path: pathlib.Path) -> LauncherConfig:
    """Loads launcher_config.json and patches ``:thisdir:`` in every string value."""
    config_path = pathlib.Path(config_path).resolve()
    this_dir = config_path.parent
    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            raw = json.load(f)
    except FileNotFoundError:
        log.info(f"{config_path.name} not found, using defaults.")
        raw = {}
    except json.JSONDecodeError as e:
        raise ConfigError(f"Error parsing {config_path}: {e}")
    if not isinstance(raw, dict):
        raise ConfigError(f"{config_path} must contain a JSON object")

    patched = {key: replace_text(value, {':thisdir:': str(this_dir)}) for key, value in raw.items()}
    log.debug(f"Launcher config: {json.dumps(patched, indent=2)}")

    known = LauncherConfig.__dataclass_fields__
    unknown = sorted(set(patched) - set(known))
    if unknown:
        log.warning(f"Ignoring unknown launcher config keys: {', '.join(unknown)}")

    basepath = pathlib.Path(patched.pop('basepath', this_dir / '.mc_launcher_data'))
    kwargs = {key: value for key, value in patched.items() if key in known}
    try:
        config = LauncherConfig(basepath=basepath, **kwargs)
        config.concurrency = int(config.concurrency)
        config.max_retries = int(config.max_retries)
        config.retry_backoff = float(config.retry_backoff)
        config.max_inheritance_depth = int(config.max_inheritance_depth)
        config.progress_buffer = int(config.progress_buffer)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value in {config_path}: {e}")
    if config.concurrency < 1:
        raise ConfigError("concurrency must be at least 1")
    return config


def load_user_config(config_path: pathlib.Path) -> UserConfig:
    """Loads config.json if it exists. Problems are logged and defaults used."""
    cfg: Dict[str, Any] = {}
    try:
        if config_path.exists():
            with open(config_path, 'r', encoding='utf-8') as f:
                cfg = json.load(f)
    except json.JSONDecodeError as e:
        log.warning(f"Could not parse {config_path.name}: {e}. Using defaults.")
    except OSError as e:
        log.warning(f"Could not read {config_path.name}: {e}. Using defaults.")
    if not isinstance(cfg, dict):
        log.warning(f"{config_path.name} is not a JSON object. Using defaults.")
        cfg = {}

    user = UserConfig()
    # Empty strings in the file mean "use the default", like missing keys.
    for key in ('auth_player_name', 'auth_uuid', 'auth_access_token', 'auth_xuid'):
        if cfg.get(key):
            setattr(user, key, str(cfg[key]))
    user.demo = bool(cfg.get('demo', False))
    if cfg.get('resolution_width') and cfg.get('resolution_height'):
        user.resolution_width = str(cfg['resolution_width'])
        user.resolution_height = str(cfg['resolution_height'])
    jvm_args = cfg.get('jvm_args') or []
    if isinstance(jvm_args, list):
        user.jvm_args = [str(arg) for arg in jvm_args]
    else:
        log.warning("config.json 'jvm_args' must be a list, ignoring it.")
    return user
