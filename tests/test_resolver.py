import json

import pytest

from conftest import (BASE_URL, RESOURCES_URL, VERSION_LIST_URL, FakeHttp, asset_index_body, library, publish,
                      sha1, version_doc)
from mcprovision.errors import CyclicInheritance, InheritanceTooDeep, MalformedManifest, Unreachable, UnknownVersion
from mcprovision.models import ArtifactKind, Digest
from mcprovision.resolver import ManifestResolver
from mcprovision.store import ArtifactStore

MAIN = 'net.minecraft.client.main.Main'


def make_resolver(http, store, facts, **kwargs):
    kwargs.setdefault('max_retries', 0)
    kwargs.setdefault('retry_backoff', 0)
    return ManifestResolver(http, store, facts=facts, version_manifest_url=VERSION_LIST_URL,
                            resources_url=RESOURCES_URL, **kwargs)


@pytest.mark.asyncio
async def test_resolves_single_version(http, store, facts):
    index = asset_index_body({'icons/a.png': b'a', 'icons/b.png': b'b'})
    publish(http, [version_doc('1.20.4', main_class=MAIN, client=b'client', asset_index=('12', index),
                               libraries=[library('com.example:a:1.0', b'a-lib')])])
    http.add(f"{BASE_URL}/indexes/12.json", index)

    resolved = await make_resolver(http, store, facts).resolve('1.20.4')

    assert resolved.id == '1.20.4'
    assert resolved.main_class == MAIN
    assert resolved.client.path == 'versions/1.20.4/1.20.4.jar'
    assert resolved.client.kind is ArtifactKind.CLIENT
    assert [lib.ref.path for lib in resolved.libraries] == ['libraries/com/example/a/1.0/a-1.0.jar']
    assert resolved.asset_index_id == '12'
    assert resolved.asset_index.path == 'assets/indexes/12.json'
    kinds = [ref.kind for ref in resolved.artifacts]
    assert kinds[0] is ArtifactKind.CLIENT
    assert kinds.count(ArtifactKind.ASSET) == 2


@pytest.mark.asyncio
async def test_child_override_keeps_parent_position(http, store, facts):
    base = version_doc('1.20-base', main_class=MAIN, client=b'client', libraries=[
        library('com.example:first:1.0', b'first'),
        library('com.example:shared:1.0', b'D1'),
        library('com.example:last:1.0', b'last'),
    ])
    child = version_doc('1.20', inherits='1.20-base', libraries=[library('com.example:shared:1.0', b'D2')])
    publish(http, [base, child])

    resolved = await make_resolver(http, store, facts).resolve('1.20')

    shared_path = 'libraries/com/example/shared/1.0/shared-1.0.jar'
    matching = [ref for ref in resolved.artifacts if ref.path == shared_path]
    assert len(matching) == 1
    assert matching[0].digest == Digest.sha1(sha1(b'D2'))
    assert [lib.ref.path for lib in resolved.libraries].index(shared_path) == 1
    assert resolved.chain == ('1.20', '1.20-base')
    assert resolved.client.path == 'versions/1.20-base/1.20-base.jar'


@pytest.mark.asyncio
async def test_deep_chain_flattens_from_the_root(http, store, facts):
    docs = [version_doc('v0', main_class=MAIN, libraries=[library('com.example:x:1', b'x0')],
                        arguments={'jvm': ['-Droot=1'], 'game': ['--root']})]
    for i in range(1, 5):
        docs.append(version_doc(f"v{i}", inherits=f"v{i - 1}",
                                libraries=[library(f"com.example:level{i}:1", f"l{i}".encode())],
                                arguments={'game': [f"--level{i}"]}))
    docs[3]['libraries'].append(library('com.example:x:1', b'x3'))
    publish(http, docs)

    resolved = await make_resolver(http, store, facts).resolve('v4')

    names = [lib.name for lib in resolved.libraries]
    assert names == ['com.example:x:1', 'com.example:level1:1', 'com.example:level2:1',
                     'com.example:level3:1', 'com.example:level4:1']
    assert resolved.libraries[0].ref.digest == Digest.sha1(sha1(b'x3'))
    assert resolved.jvm_arguments == ('-Droot=1',)
    assert resolved.game_arguments == ('--root', '--level1', '--level2', '--level3', '--level4')


@pytest.mark.asyncio
async def test_cyclic_inheritance(http, store, facts):
    publish(http, [version_doc('a', inherits='b', main_class=MAIN), version_doc('b', inherits='a')])

    with pytest.raises(CyclicInheritance) as info:
        await make_resolver(http, store, facts).resolve('a')
    assert info.value.chain == ('a', 'b', 'a')


@pytest.mark.asyncio
async def test_inheritance_depth_limit(http, store, facts):
    publish(http, [version_doc('v0', main_class=MAIN), version_doc('v1', inherits='v0'),
                   version_doc('v2', inherits='v1')])

    with pytest.raises(InheritanceTooDeep) as info:
        await make_resolver(http, store, facts, max_depth=2).resolve('v2')
    assert info.value.limit == 2


@pytest.mark.asyncio
async def test_resolves_offline_from_cached_documents(http, store_root, facts):
    index = asset_index_body({'icons/a.png': b'a'})
    publish(http, [version_doc('1.20.4', main_class=MAIN, client=b'client', asset_index=('12', index))])
    http.add(f"{BASE_URL}/indexes/12.json", index)
    online = await make_resolver(http, ArtifactStore(store_root), facts).resolve('1.20.4')

    offline_http = FakeHttp()
    offline_http.offline = True
    offline = await make_resolver(offline_http, ArtifactStore(store_root), facts).resolve('1.20.4')

    assert offline.artifacts == online.artifacts


@pytest.mark.asyncio
async def test_unseen_version_offline_is_unreachable(store, facts):
    http = FakeHttp()
    http.offline = True

    with pytest.raises(Unreachable) as info:
        await make_resolver(http, store, facts).resolve('1.20.4')
    assert info.value.version_id == '1.20.4'


@pytest.mark.asyncio
async def test_unlisted_version_is_unknown(http, store, facts):
    publish(http, [version_doc('1.20.4', main_class=MAIN)])

    with pytest.raises(UnknownVersion):
        await make_resolver(http, store, facts).resolve('2.0-imaginary')


@pytest.mark.asyncio
async def test_release_alias(http, store, facts):
    publish(http, [version_doc('1.20.4', main_class=MAIN)], latest={'release': '1.20.4'})

    resolved = await make_resolver(http, store, facts).resolve('release')
    assert resolved.id == '1.20.4'


@pytest.mark.asyncio
async def test_local_profile_inherits_listed_version(http, store, store_root, facts):
    publish(http, [version_doc('1.20.4', main_class=MAIN, client=b'client')])
    profile = version_doc('fabric-loader-1.20.4', inherits='1.20.4', main_class='net.fabricmc.loader.Main',
                          libraries=[library('net.fabricmc:fabric-loader:0.15.0', b'loader')])
    path = store_root / 'versions' / 'fabric-loader-1.20.4' / 'fabric-loader-1.20.4.json'
    path.parent.mkdir(parents=True)
    path.write_text(json.dumps(profile))

    resolved = await make_resolver(http, store, facts).resolve('fabric-loader-1.20.4')

    assert resolved.main_class == 'net.fabricmc.loader.Main'
    assert resolved.client.path == 'versions/1.20.4/1.20.4.jar'
    assert resolved.chain == ('fabric-loader-1.20.4', '1.20.4')


@pytest.mark.asyncio
async def test_platform_rules_and_natives(http, store, facts):
    natives_body = b'natives'
    natives_lib = {
        'name': 'org.lwjgl:lwjgl:3.3.1',
        'natives': {'linux': 'natives-linux', 'osx': 'natives-macos'},
        'extract': {'exclude': ['META-INF/', 'module-info.class']},
        'downloads': {'classifiers': {
            'natives-linux': {'path': 'org/lwjgl/lwjgl/3.3.1/lwjgl-3.3.1-natives-linux.jar',
                              'url': f"{BASE_URL}/n.jar", 'sha1': sha1(natives_body), 'size': len(natives_body)},
            'natives-macos': {'path': 'org/lwjgl/lwjgl/3.3.1/lwjgl-3.3.1-natives-macos.jar',
                              'url': f"{BASE_URL}/m.jar", 'sha1': sha1(b'mac'), 'size': 3},
        }},
    }
    publish(http, [version_doc('1.12.2', main_class=MAIN, libraries=[
        library('com.example:everywhere:1', b'e'),
        library('com.example:mac-only:1', b'm', rules=[{'action': 'allow', 'os': {'name': 'osx'}}]),
        natives_lib,
    ])])

    resolved = await make_resolver(http, store, facts).resolve('1.12.2')

    assert [lib.name for lib in resolved.libraries] == ['com.example:everywhere:1', 'org.lwjgl:lwjgl:3.3.1:natives-linux']
    native = resolved.libraries[1]
    assert native.native
    assert native.ref.kind is ArtifactKind.NATIVE
    assert native.ref.path == 'libraries/org/lwjgl/lwjgl/3.3.1/lwjgl-3.3.1-natives-linux.jar'
    assert native.extract_excludes == ('META-INF/', 'module-info.class')


@pytest.mark.asyncio
async def test_assets_are_addressed_by_hash(http, store, facts):
    index = asset_index_body({'sounds/a.ogg': b'same', 'sounds/copy.ogg': b'same', 'icons/b.png': b'other'})
    publish(http, [version_doc('1.20.4', main_class=MAIN, asset_index=('12', index))])
    http.add(f"{BASE_URL}/indexes/12.json", index)

    resolved = await make_resolver(http, store, facts).resolve('1.20.4')

    assert len(resolved.assets) == 2
    digest = sha1(b'same')
    ref = resolved.assets[0]
    assert ref.path == f"assets/objects/{digest[:2]}/{digest}"
    assert ref.url == f"{RESOURCES_URL}/{digest[:2]}/{digest}"
    assert ref.digest == Digest.sha1(digest)


@pytest.mark.asyncio
async def test_missing_main_class_is_malformed(http, store, facts):
    publish(http, [version_doc('headless')])

    with pytest.raises(MalformedManifest):
        await make_resolver(http, store, facts).resolve('headless')


@pytest.mark.asyncio
async def test_legacy_arguments_are_split(http, store, facts):
    publish(http, [version_doc('1.7.10', main_class=MAIN,
                               minecraftArguments='--username ${auth_player_name} --version ${version_name}')])

    resolved = await make_resolver(http, store, facts).resolve('1.7.10')

    assert resolved.jvm_arguments is None
    assert resolved.game_arguments == ('--username', '${auth_player_name}', '--version', '${version_name}')


@pytest.mark.asyncio
async def test_modern_child_of_legacy_version_keeps_the_legacy_game_line(http, store, facts):
    parent = version_doc('1.12.2', main_class='net.minecraft.launchwrapper.Launch',
                         minecraftArguments='--username ${auth_player_name} --version ${version_name}')
    child = version_doc('fabric-1.12.2', inherits='1.12.2', main_class='net.fabricmc.loader.impl.launch.knot.KnotClient',
                        arguments={'game': ['--fabric'], 'jvm': ['-DFabricMcEmu=net.minecraft.client.main.Main']})
    publish(http, [parent, child])

    resolved = await make_resolver(http, store, facts).resolve('fabric-1.12.2')

    assert resolved.legacy
    assert resolved.main_class == 'net.fabricmc.loader.impl.launch.knot.KnotClient'
    assert resolved.game_arguments == ('--username', '${auth_player_name}', '--version', '${version_name}', '--fabric')
    assert resolved.jvm_arguments == ('-DFabricMcEmu=net.minecraft.client.main.Main',)


@pytest.mark.asyncio
async def test_artifact_gateway_serves_store_paths(http, store, facts):
    gateway = 'https://mirror.example.test/mc/'
    index = asset_index_body({'icons/a.png': b'a'})
    publish(http, [version_doc('1.20.4', main_class=MAIN, client=b'client', asset_index=('12', index),
                               libraries=[library('com.example:a:1.0', b'a-lib')])])
    http.add('https://mirror.example.test/mc/assets/indexes/12.json', index)

    resolved = await make_resolver(http, store, facts, artifact_gateway_url=gateway).resolve('1.20.4')

    assert resolved.client.url == 'https://mirror.example.test/mc/versions/1.20.4/1.20.4.jar'
    assert resolved.client.digest == Digest.sha1(sha1(b'client'))
    assert resolved.libraries[0].ref.url == 'https://mirror.example.test/mc/libraries/com/example/a/1.0/a-1.0.jar'
    assert resolved.asset_index.url == 'https://mirror.example.test/mc/assets/indexes/12.json'
    digest = sha1(b'a')
    assert resolved.assets[0].url == f"{RESOURCES_URL}/{digest[:2]}/{digest}"
    assert http.count(f"{BASE_URL}/indexes/12.json") == 0
