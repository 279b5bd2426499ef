"""
SOCKS5 协议包

本包提供了 telesock 使用的 SOCKS5 协议定义，包括：
- 协议常量和枚举
- IPv4 地址/端口编解码
- 请求头部、请求和回复的序列化/解析

使用示例：
    from protocol import Reply, decode_address

    host, port = decode_address(b'\\x7f\\x00\\x00\\x01\\x00\\x50')
    data = Reply.success('10.0.0.2', 40000).serialize()
"""

from .core import (
    # 协议常量
    SOCKS_VERSION,
    AUTH_VERSION,
    HEADER_SIZE,
    ADDRESS_SIZE,

    # 枚举
    Method,
    Command,
    AddressType,
    ReplyCode,
    AuthStatus,

    # 地址编解码
    encode_address,
    decode_address,

    # 帧
    RequestHeader,
    Request,
    Reply,
    method_reply,
    auth_reply,
    select_method,
)
