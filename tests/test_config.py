import json
import logging

import pytest

from mcprovision.config import ConfigError, LauncherConfig, load_launcher_config, load_user_config


def test_missing_launcher_config_uses_defaults(tmp_path):
    config = load_launcher_config(tmp_path / 'launcher_config.json')
    assert config.basepath == tmp_path.resolve() / '.mc_launcher_data'
    assert config.minecraft_dir == config.basepath / '.minecraft'
    assert config.version == 'release'
    assert config.concurrency >= 1
    assert config.artifact_gateway_url is None


def test_thisdir_is_patched(tmp_path):
    path = tmp_path / 'launcher_config.json'
    path.write_text(json.dumps({'basepath': ':thisdir:/data', 'version': '1.20.4', 'concurrency': '4'}))

    config = load_launcher_config(path)

    assert config.basepath == tmp_path.resolve() / 'data'
    assert config.versions_dir == tmp_path.resolve() / 'data' / '.minecraft' / 'versions'
    assert config.version == '1.20.4'
    assert config.concurrency == 4


def test_unknown_keys_are_reported(tmp_path, caplog):
    path = tmp_path / 'launcher_config.json'
    path.write_text(json.dumps({'neoforge': True}))
    with caplog.at_level(logging.WARNING):
        config = load_launcher_config(path)
    assert isinstance(config, LauncherConfig)
    assert 'neoforge' in caplog.text


@pytest.mark.parametrize('content', ['{broken', '[]', '{"concurrency": 0}', '{"max_retries": "many"}'])
def test_invalid_launcher_config(tmp_path, content):
    path = tmp_path / 'launcher_config.json'
    path.write_text(content)
    with pytest.raises(ConfigError):
        load_launcher_config(path)


def test_user_config_defaults(tmp_path):
    user = load_user_config(tmp_path / 'config.json')
    assert user.auth_player_name == 'Player'
    assert user.options() == {'demo': False, 'resolution_width': None, 'resolution_height': None}


def test_user_config_values(tmp_path):
    path = tmp_path / 'config.json'
    path.write_text(json.dumps({
        'auth_player_name': 'Steve', 'auth_uuid': '', 'demo': True,
        'resolution_width': 1280, 'resolution_height': 720, 'jvm_args': ['-Xmx4G'],
    }))
    user = load_user_config(path)
    assert user.auth_player_name == 'Steve'
    assert user.auth_uuid == '00000000-0000-0000-0000-000000000000'
    assert user.demo
    assert (user.resolution_width, user.resolution_height) == ('1280', '720')
    assert user.jvm_args == ['-Xmx4G']


def test_broken_user_config_falls_back(tmp_path, caplog):
    path = tmp_path / 'config.json'
    path.write_text('{oops')
    with caplog.at_level(logging.WARNING):
        user = load_user_config(path)
    assert user.auth_player_name == 'Player'
    assert 'config.json' in caplog.text
