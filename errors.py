"""
telesock - 错误类型

会话中所有可预期的失败都以 Socks5Error 的子类抛出，由 ConnectionHandler
在会话边界统一捕获并记录日志。协议本身的状态码/回复码是唯一返回给客户端
的错误通道。
"""


class Socks5Error(Exception):
    """会话错误基类"""


class ProtocolError(Socks5Error):
    """字段格式错误或不支持（版本、命令、地址类型、零长度凭据、截断读取）"""


class AuthError(Socks5Error):
    """用户名或密码与任何已配置的用户都不匹配"""


class DialError(Socks5Error):
    """无法连接到目标地址（包括连接超时）"""


class TransportError(Socks5Error):
    """读写客户端或目标连接时发生传输层错误"""


class ConfigError(Exception):
    """配置文件无法读取或格式错误"""
