"""Parsing of version documents, asset indexes and the remote version list."""
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from .errors import MalformedManifest
from .models import AssetEntry, AssetIndexRef, Digest, Download, LibraryRef, LoggingRef, VersionManifest
from .rules import parse_rules

log = logging.getLogger(__name__)


def load_json(data: bytes, source: str) -> Dict[str, Any]:
    try:
        document = json.loads(data.decode('utf-8'))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedManifest(source, f"invalid JSON: {e}")
    if not isinstance(document, dict):
        raise MalformedManifest(source, "top level must be an object")
    return document


def maven_path(name: str) -> str:
    """
    Maps a maven coordinate to its repository path.

    ``group:artifact:version[:classifier][@ext]`` becomes
    ``group/as/dirs/artifact/version/artifact-version[-classifier].ext``.
    """
    ext = 'jar'
    if '@' in name:
        name, ext = name.rsplit('@', 1)
    parts = name.split(':')
    if len(parts) not in (3, 4) or not all(parts):
        raise ValueError(f"not a maven coordinate: {name!r}")
    group, artifact, version = parts[:3]
    classifier = f"-{parts[3]}" if len(parts) == 4 else ''
    return f"{group.replace('.', '/')}/{artifact}/{version}/{artifact}-{version}{classifier}.{ext}"


def _expect(value: Any, kind: type, where: str, source: str) -> Any:
    if not isinstance(value, kind):
        raise MalformedManifest(source, f"{where} must be {kind.__name__}")
    return value


def parse_download(value: Any, where: str, source: str) -> Download:
    _expect(value, dict, where, source)
    url = _expect(value.get('url'), str, f"{where}/url", source)
    sha1 = value.get('sha1')
    if not isinstance(sha1, str) or not sha1:
        raise MalformedManifest(source, f"{where}/sha1 is required to verify {url}")
    size = value.get('size')
    if size is not None and not isinstance(size, int):
        raise MalformedManifest(source, f"{where}/size must be an integer")
    path = value.get('path')
    if path is not None and not isinstance(path, str):
        raise MalformedManifest(source, f"{where}/path must be a string")
    return Download(url=url, digest=Digest.sha1(sha1), size=size, path=path)


def parse_library(value: Any, index: int, source: str) -> LibraryRef:
    where = f"/libraries/{index}"
    _expect(value, dict, where, source)
    name = _expect(value.get('name'), str, f"{where}/name", source)
    try:
        rules = parse_rules(value.get('rules'))
    except ValueError as e:
        raise MalformedManifest(source, f"{where}/rules: {e}")

    downloads = value.get('downloads') or {}
    _expect(downloads, dict, f"{where}/downloads", source)

    artifact = None
    if downloads.get('artifact') is not None:
        artifact = parse_download(downloads['artifact'], f"{where}/downloads/artifact", source)
    elif 'url' in value:
        # Maven repository style (mod loaders): base url + coordinate path.
        try:
            rel = maven_path(name)
        except ValueError as e:
            raise MalformedManifest(source, f"{where}/name: {e}")
        sha1 = value.get('sha1')
        if not isinstance(sha1, str) or not sha1:
            raise MalformedManifest(source, f"{where}/sha1 is required to verify library {name}")
        base = _expect(value['url'], str, f"{where}/url", source)
        artifact = Download(url=base.rstrip('/') + '/' + rel, digest=Digest.sha1(sha1), size=value.get('size'), path=rel)

    classifiers: Dict[str, Download] = {}
    raw_classifiers = downloads.get('classifiers') or {}
    _expect(raw_classifiers, dict, f"{where}/downloads/classifiers", source)
    for key, item in raw_classifiers.items():
        classifiers[key] = parse_download(item, f"{where}/downloads/classifiers/{key}", source)

    natives = value.get('natives') or {}
    _expect(natives, dict, f"{where}/natives", source)

    excludes: Tuple[str, ...] = ()
    extract = value.get('extract')
    if extract is not None:
        _expect(extract, dict, f"{where}/extract", source)
        excludes = tuple(str(x) for x in extract.get('exclude') or ())

    if artifact is not None and artifact.path:
        path = artifact.path
    else:
        try:
            path = maven_path(name)
        except ValueError as e:
            raise MalformedManifest(source, f"{where}/name: {e}")

    if artifact is None and not classifiers:
        raise MalformedManifest(source, f"{where} ({name}) has nothing to download")

    return LibraryRef(
        name=name,
        path=path,
        artifact=artifact,
        classifiers=classifiers,
        natives={str(k): str(v) for k, v in natives.items()},
        rules=rules,
        extract_excludes=excludes,
    )


def _parse_arguments(value: Any, where: str, source: str) -> Optional[Tuple[Any, ...]]:
    if value is None:
        return None
    _expect(value, list, where, source)
    for i, entry in enumerate(value):
        if not isinstance(entry, (str, dict)):
            raise MalformedManifest(source, f"{where}/{i} must be a string or an object")
    return tuple(value)


def parse_version_manifest(data: bytes, source: str) -> VersionManifest:
    """Turns a version document into a ``VersionManifest`` record."""
    doc = load_json(data, source)
    version_id = doc.get('id')
    if not isinstance(version_id, str) or not version_id:
        raise MalformedManifest(source, "missing required 'id' field")

    inherits_from = doc.get('inheritsFrom')
    if inherits_from is not None and (not isinstance(inherits_from, str) or not inherits_from):
        raise MalformedManifest(source, "/inheritsFrom must be a non-empty string")

    libraries = tuple(parse_library(lib, i, source) for i, lib in enumerate(_expect(doc.get('libraries') or [], list, '/libraries', source)))

    asset_index = None
    if doc.get('assetIndex') is not None:
        raw = _expect(doc['assetIndex'], dict, '/assetIndex', source)
        index_id = _expect(raw.get('id'), str, '/assetIndex/id', source)
        asset_index = AssetIndexRef(id=index_id, download=parse_download(raw, '/assetIndex', source), total_size=raw.get('totalSize'))

    client = None
    downloads = doc.get('downloads') or {}
    _expect(downloads, dict, '/downloads', source)
    if downloads.get('client') is not None:
        client = parse_download(downloads['client'], '/downloads/client', source)

    arguments = doc.get('arguments')
    jvm_arguments = game_arguments = None
    if arguments is not None:
        _expect(arguments, dict, '/arguments', source)
        jvm_arguments = _parse_arguments(arguments.get('jvm', []), '/arguments/jvm', source)
        game_arguments = _parse_arguments(arguments.get('game', []), '/arguments/game', source)

    legacy = doc.get('minecraftArguments')
    if legacy is not None:
        _expect(legacy, str, '/minecraftArguments', source)

    logging_ref = None
    logging_doc = _expect(doc.get('logging') or {}, dict, '/logging', source)
    client_logging = logging_doc.get('client')
    if client_logging is not None:
        _expect(client_logging, dict, '/logging/client', source)
        file_info = _expect(client_logging.get('file'), dict, '/logging/client/file', source)
        logging_ref = LoggingRef(
            id=_expect(file_info.get('id'), str, '/logging/client/file/id', source),
            download=parse_download(file_info, '/logging/client/file', source),
            argument=_expect(client_logging.get('argument'), str, '/logging/client/argument', source),
        )

    java_major = None
    java_version = doc.get('javaVersion')
    if isinstance(java_version, dict) and isinstance(java_version.get('majorVersion'), int):
        java_major = java_version['majorVersion']

    main_class = doc.get('mainClass')
    if main_class is not None:
        _expect(main_class, str, '/mainClass', source)

    return VersionManifest(
        id=version_id,
        inherits_from=inherits_from,
        type=doc.get('type') if isinstance(doc.get('type'), str) else None,
        main_class=main_class,
        libraries=libraries,
        asset_index=asset_index,
        assets=doc.get('assets') if isinstance(doc.get('assets'), str) else None,
        client=client,
        jvm_arguments=jvm_arguments,
        game_arguments=game_arguments,
        legacy_arguments=legacy,
        logging=logging_ref,
        java_major=java_major,
    )


def parse_asset_index(data: bytes, source: str) -> List[AssetEntry]:
    doc = load_json(data, source)
    objects = _expect(doc.get('objects', {}), dict, '/objects', source)
    entries = []
    for name, details in objects.items():
        _expect(details, dict, f"/objects/{name}", source)
        asset_hash = details.get('hash')
        if not isinstance(asset_hash, str) or len(asset_hash) < 2:
            raise MalformedManifest(source, f"asset '{name}' is missing its hash")
        size = details.get('size')
        if not isinstance(size, int):
            raise MalformedManifest(source, f"asset '{name}' is missing its size")
        entries.append(AssetEntry(name=name, hash=asset_hash.lower(), size=size))
    return entries


@dataclass(frozen=True)
class VersionListEntry:
    id: str
    url: str
    sha1: str
    type: str = 'release'


@dataclass(frozen=True)
class VersionList:
    latest: Dict[str, str]
    versions: Dict[str, VersionListEntry]

    def lookup(self, version_id: str) -> Tuple[str, Optional[VersionListEntry]]:
        """Resolves the 'release'/'snapshot' aliases, then finds the entry."""
        version_id = self.latest.get(version_id, version_id)
        return version_id, self.versions.get(version_id)


def parse_version_list(data: bytes, source: str) -> VersionList:
    doc = load_json(data, source)
    latest = doc.get('latest') or {}
    _expect(latest, dict, '/latest', source)
    versions = {}
    for i, item in enumerate(_expect(doc.get('versions', []), list, '/versions', source)):
        _expect(item, dict, f"/versions/{i}", source)
        version_id = item.get('id')
        url = item.get('url')
        sha1 = item.get('sha1')
        if not (isinstance(version_id, str) and isinstance(url, str) and isinstance(sha1, str)):
            raise MalformedManifest(source, f"/versions/{i} needs id, url and sha1")
        versions[version_id] = VersionListEntry(version_id, url, sha1, str(item.get('type', 'release')))
    return VersionList(latest={str(k): str(v) for k, v in latest.items()}, versions=versions)
