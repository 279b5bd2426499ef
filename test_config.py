#!/usr/bin/env python3
"""
配置加载测试
"""

import dataclasses
import os

import pytest

from config import Config, Credential, load_config, parse_config, share_links
from errors import ConfigError


def write(tmp_path, text: str) -> str:
    path = tmp_path / 'telesock.yaml'
    path.write_text(text, encoding='utf-8')
    return str(path)


def test_load_config(tmp_path):
    config = load_config(write(tmp_path, """
server: proxy.example.com
dial_timeout: 5
logging:
  level: INFO
users:
  - username: user
    password: pass
  - username: 用户
    password: 密码
"""))
    assert config.server == 'proxy.example.com'
    assert config.dial_timeout == 5
    assert config.log.level == 'INFO'
    assert config.credentials == (
        Credential(b'user', b'pass'),
        Credential('用户'.encode('utf-8'), '密码'.encode('utf-8')),
    )


def test_defaults():
    config = parse_config({'users': [{'username': 'u', 'password': 'p'}]})
    assert config.server is None
    assert config.dial_timeout == 30.0
    assert config.socket_buffer_size == 4096
    assert config.shutdown_timeout is None
    assert parse_config(None) == Config()


def test_config_is_immutable():
    config = parse_config({'users': [{'username': 'u', 'password': 'p'}]})
    assert isinstance(config.credentials, tuple)
    with pytest.raises(dataclasses.FrozenInstanceError):
        config.credentials = ()
    with pytest.raises(dataclasses.FrozenInstanceError):
        config.credentials[0].password = b'x'


@pytest.mark.parametrize('data', [
    {'unknown': 1},
    {'users': [{'username': 'u', 'password': 'p', 'extra': 1}]},
    {'users': [{'username': 'u'}]},
    {'users': [{'username': '', 'password': 'p'}]},
    {'users': [{'username': 'u', 'password': 123}]},
    {'users': [{'username': 'u' * 256, 'password': 'p'}]},
    {'users': {'u': 'p'}},
    {'dial_timeout': 'soon'},
    {'stats_interval': -1},
    {'logging': {'colour': True}},
    {'logging': {'max_bytes': '10MB'}},
    {'logging': {'backup_count': 2.5}},
    {'logging': {'level': 10}},
    {'logging': {'log_file': ['a.log']}},
    {'logging': {'enable_console': 'yes'}},
    ['not', 'a', 'mapping'],
])
def test_strict_parsing(data):
    with pytest.raises(ConfigError):
        parse_config(data)


def test_load_missing_file(tmp_path):
    with pytest.raises(ConfigError):
        load_config(str(tmp_path / 'missing.yaml'))


def test_load_malformed_yaml(tmp_path):
    with pytest.raises(ConfigError):
        load_config(write(tmp_path, "users: [\n"))


def test_share_links():
    config = parse_config({
        'server': 'proxy.example.com',
        'users': [{'username': 'user', 'password': 'p&ss'}],
    })
    assert share_links(config, 1080) == [
        ('user', 'https://t.me/socks?pass=p%26ss&port=1080&server=proxy.example.com&user=user'),
    ]


def test_share_links_without_server():
    config = parse_config({'users': [{'username': 'user', 'password': 'pass'}]})
    assert share_links(config, 1080) == []


def test_example_config_loads():
    path = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'telesock.example.yaml')
    config = load_config(path)
    assert config.credentials == (Credential(b'user', b'pass'),)
    assert share_links(config, 1080)


def test_logging_section():
    config = parse_config({'logging': {
        'level': 'DEBUG', 'log_file': 'telesock.log', 'max_bytes': 1024,
        'backup_count': 3, 'enable_console': False,
    }})
    assert config.log.level == 'DEBUG'
    assert config.log.max_bytes == 1024
    assert config.log.enable_console is False
