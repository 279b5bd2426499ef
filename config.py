"""
telesock - 配置管理模块
加载 YAML 配置文件，生成不可变的配置对象。

功能概述:
1. 读取并严格校验 YAML 格式的配置文件（未知字段视为错误）
2. 将用户列表转换为不可变的凭据元组，所有会话只读共享
3. 为每个用户生成 Telegram 代理分享链接

配置文件格式:
    server: proxy.example.com
    dial_timeout: 30
    users:
      - username: user
        password: pass
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode, urlunsplit

import yaml

from errors import ConfigError
from logger import LogConfig

logger = logging.getLogger('telesock-config')

DEFAULT_CONFIG_FILE = 'telesock.yaml'

_TOP_LEVEL_KEYS = {
    'server', 'dial_timeout', 'socket_buffer_size',
    'stats_interval', 'shutdown_timeout', 'logging', 'users',
}
_USER_KEYS = {'username', 'password'}
_LOGGING_KEYS = {'level', 'log_file', 'max_bytes', 'backup_count', 'format_string', 'enable_console'}


# ============================================================================
# 配置数据类
# ============================================================================

@dataclass(frozen=True)
class Credential:
    """
    用户凭据

    Attributes:
        username: 用户名（UTF-8 字节）
        password: 密码（UTF-8 字节）
    """
    username: bytes
    password: bytes

    @classmethod
    def from_strings(cls, username: str, password: str) -> 'Credential':
        return cls(username.encode('utf-8'), password.encode('utf-8'))


@dataclass(frozen=True)
class Config:
    """
    代理配置

    加载后不再修改，由所有并发会话引用共享，无需加锁。

    Attributes:
        credentials: 按文件顺序排列的用户凭据
        server: 对外公开的主机名，用于生成分享链接（可选）
        dial_timeout: 连接目标主机的超时（秒）
        socket_buffer_size: 客户端 socket 收发缓冲区大小，0 表示不设置
        stats_interval: 统计信息报告间隔（秒），0 表示禁用
        shutdown_timeout: 停止后等待会话结束的时间（秒），None 表示一直等待
        log: 日志配置
    """
    credentials: Tuple[Credential, ...] = ()
    server: Optional[str] = None
    dial_timeout: float = 30.0
    socket_buffer_size: int = 4096
    stats_interval: float = 60.0
    shutdown_timeout: Optional[float] = None
    log: LogConfig = field(default_factory=LogConfig)


# ============================================================================
# 配置文件加载
# ============================================================================

def _check_keys(section: str, data: Dict[str, Any], allowed: set):
    unknown = set(data) - allowed
    if unknown:
        raise ConfigError(f"{section} 中存在未知字段: {', '.join(sorted(unknown))}")


def _number(data: Dict[str, Any], key: str, default, allow_none: bool = False):
    value = data.get(key, default)
    if value is None and allow_none:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
        raise ConfigError(f"{key} 必须是非负数字，实际为 {value!r}")
    return value


def _parse_users(users: Any) -> Tuple[Credential, ...]:
    if users is None:
        return ()
    if not isinstance(users, list):
        raise ConfigError("users 必须是列表")

    credentials: List[Credential] = []
    for i, user in enumerate(users):
        if not isinstance(user, dict):
            raise ConfigError(f"users[{i}] 必须是映射")
        _check_keys(f"users[{i}]", user, _USER_KEYS)
        username = user.get('username')
        password = user.get('password')
        for name, value in (('username', username), ('password', password)):
            if not isinstance(value, str) or not value:
                raise ConfigError(f"users[{i}].{name} 必须是非空字符串")
            # SOCKS5 子协商中长度字段只有 1 字节
            if len(value.encode('utf-8')) > 255:
                raise ConfigError(f"users[{i}].{name} 超过 255 字节")
        credentials.append(Credential.from_strings(username, password))
    return tuple(credentials)


def _parse_logging(data: Any) -> LogConfig:
    if data is None:
        return LogConfig()
    if not isinstance(data, dict):
        raise ConfigError("logging 必须是映射")
    _check_keys('logging', data, _LOGGING_KEYS)

    defaults = LogConfig()
    for key in ('level', 'format_string'):
        if not isinstance(data.get(key, ''), str):
            raise ConfigError(f"logging.{key} 必须是字符串")
    log_file = data.get('log_file')
    if log_file is not None and not isinstance(log_file, str):
        raise ConfigError("logging.log_file 必须是字符串")
    enable_console = data.get('enable_console', defaults.enable_console)
    if not isinstance(enable_console, bool):
        raise ConfigError("logging.enable_console 必须是布尔值")
    for key in ('max_bytes', 'backup_count'):
        if not isinstance(_number(data, key, getattr(defaults, key)), int):
            raise ConfigError(f"logging.{key} 必须是整数")

    return LogConfig(**data)


def parse_config(data: Any) -> Config:
    """
    将 YAML 解析结果转换为 Config

    Raises:
        ConfigError: 存在未知字段、类型错误或用户名/密码为空
    """
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError("配置文件顶层必须是映射")
    _check_keys('配置文件', data, _TOP_LEVEL_KEYS)

    server = data.get('server')
    if server is not None and not isinstance(server, str):
        raise ConfigError("server 必须是字符串")

    return Config(
        credentials=_parse_users(data.get('users')),
        server=server or None,
        dial_timeout=_number(data, 'dial_timeout', 30.0),
        socket_buffer_size=_number(data, 'socket_buffer_size', 4096),
        stats_interval=_number(data, 'stats_interval', 60.0),
        shutdown_timeout=_number(data, 'shutdown_timeout', None, allow_none=True),
        log=_parse_logging(data.get('logging')),
    )


def load_config(config_file: str) -> Config:
    """
    加载配置文件

    与只返回空字典的宽松加载不同，这里任何错误都会抛出 ConfigError，
    由调用方决定是否退出。

    Args:
        config_file: 配置文件路径

    Returns:
        Config: 不可变配置对象
    """
    try:
        with open(config_file, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"无法读取配置文件: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"配置文件格式错误: {e}") from e

    config = parse_config(data)
    logger.info(f"已加载 {len(config.credentials)} 个用户")
    return config


def share_links(config: Config, port: int) -> List[Tuple[str, str]]:
    """
    生成每个用户的 Telegram 代理分享链接

    未配置 server 时返回空列表。

    Returns:
        List[Tuple[str, str]]: (用户名, 链接) 列表
    """
    if not config.server:
        return []

    links = []
    for credential in config.credentials:
        username = credential.username.decode('utf-8')
        query = urlencode({
            'pass': credential.password.decode('utf-8'),
            'port': str(port),
            'server': config.server,
            'user': username,
        })
        links.append((username, urlunsplit(('https', 't.me', '/socks', query, ''))))
    return links
