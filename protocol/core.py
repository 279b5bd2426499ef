"""
telesock - SOCKS5 核心协议模块
定义 SOCKS5 协议的常量、地址编解码以及请求/回复帧格式。

功能概述:
本模块只实现代理需要的 SOCKS5 子集：用户名/密码认证（RFC 1929）和
IPv4 的 CONNECT 命令。BIND、UDP ASSOCIATE、IPv6 和域名地址类型均不支持。

请求格式:
┌─────────┬─────────┬─────────┬─────────┬─────────────┬─────────────┐
│ VER     │ CMD     │ RSV     │ ATYP    │ DST.ADDR    │ DST.PORT    │
│ 1 字节  │ 1 字节  │ 1 字节  │ 1 字节  │ 4 字节      │ 2 字节      │
└─────────┴─────────┴─────────┴─────────┴─────────────┴─────────────┘

回复格式:
┌─────────┬─────────┬─────────┬─────────┬─────────────┬─────────────┐
│ VER     │ REP     │ RSV     │ ATYP    │ BND.ADDR    │ BND.PORT    │
│ 1 字节  │ 1 字节  │ 1 字节  │ 1 字节  │ 4 字节      │ 2 字节      │
└─────────┴─────────┴─────────┴─────────┴─────────────┴─────────────┘

所有多字节字段使用大端序（网络字节序）。
"""

import socket
import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Tuple

from errors import ProtocolError


# ============================================================================
# 协议常量
# ============================================================================

SOCKS_VERSION = 0x05
AUTH_VERSION = 0x01  # 用户名/密码子协商版本

HEADER_SIZE = 4  # VER + CMD/REP + RSV + ATYP
ADDRESS_SIZE = 6  # IPv4 地址(4) + 端口(2)

_ADDRESS_STRUCT = struct.Struct('>4sH')
_HEADER_STRUCT = struct.Struct('>BBBB')


class Method(IntEnum):
    """认证方法"""
    USERNAME_PASSWORD = 0x02
    NO_ACCEPTABLE = 0xFF


class Command(IntEnum):
    CONNECT = 0x01


class AddressType(IntEnum):
    IPV4 = 0x01


class ReplyCode(IntEnum):
    SUCCEEDED = 0x00
    GENERAL_FAILURE = 0x01


class AuthStatus(IntEnum):
    SUCCESS = 0x00
    FAILURE = 0x01


# ============================================================================
# 地址编解码
# ============================================================================

def encode_address(addr: str, port: int) -> bytes:
    """
    将 IPv4 地址和端口编码为 6 字节结构

    Args:
        addr: 点分十进制 IPv4 地址
        port: 端口号（0-65535）

    Returns:
        bytes: 4 字节地址 + 2 字节端口，均为网络字节序

    Raises:
        ProtocolError: 地址不是合法的 IPv4 地址或端口超出范围
    """
    try:
        packed = socket.inet_aton(addr)
    except (OSError, TypeError) as e:
        raise ProtocolError(f"无效的 IPv4 地址: {addr!r}") from e
    if not 0 <= port <= 0xFFFF:
        raise ProtocolError(f"无效的端口号: {port}")
    return _ADDRESS_STRUCT.pack(packed, port)


def decode_address(data: bytes) -> Tuple[str, int]:
    """
    从 6 字节结构解码 IPv4 地址和端口

    Returns:
        Tuple[str, int]: (地址, 端口)

    Raises:
        ProtocolError: 数据长度不是 6 字节
    """
    if len(data) != ADDRESS_SIZE:
        raise ProtocolError(f"地址结构长度错误: {len(data)} 字节")
    packed, port = _ADDRESS_STRUCT.unpack(data)
    return socket.inet_ntoa(packed), port


# ============================================================================
# 请求和回复
# ============================================================================

@dataclass(frozen=True)
class RequestHeader:
    """请求的固定 4 字节头部"""
    version: int
    command: int
    reserved: int
    address_type: int

    @classmethod
    def parse(cls, data: bytes) -> 'RequestHeader':
        if len(data) != HEADER_SIZE:
            raise ProtocolError(f"请求头部长度错误: {len(data)} 字节")
        return cls(*_HEADER_STRUCT.unpack(data))

    def validate(self):
        """
        检查头部字段

        只接受 VER=5、CMD=CONNECT、RSV=0、ATYP=IPv4。任何不匹配都抛出
        ProtocolError，调用方不应发送回复。
        """
        if self.version != SOCKS_VERSION:
            raise ProtocolError(f"不支持的请求版本 {self.version}")
        if self.command != Command.CONNECT:
            raise ProtocolError(f"不支持的命令 {self.command}")
        if self.reserved != 0:
            raise ProtocolError(f"保留字节不为零: {self.reserved}")
        if self.address_type != AddressType.IPV4:
            raise ProtocolError(f"不支持的地址类型 {self.address_type}")


@dataclass(frozen=True)
class Request:
    """解析后的 CONNECT 请求"""
    version: int
    command: int
    reserved: int
    address_type: int
    host: str
    port: int

    @classmethod
    def from_parts(cls, header: RequestHeader, address: bytes) -> 'Request':
        host, port = decode_address(address)
        return cls(header.version, header.command, header.reserved,
                   header.address_type, host, port)

    def serialize(self) -> bytes:
        return (_HEADER_STRUCT.pack(self.version, self.command, self.reserved, self.address_type)
                + encode_address(self.host, self.port))


@dataclass(frozen=True)
class Reply:
    """
    请求阶段的回复

    Attributes:
        reply_code: ReplyCode
        bound_host: 代理到目标连接的本地地址，失败时为 0.0.0.0
        bound_port: 代理到目标连接的本地端口，失败时为 0
    """
    reply_code: int
    bound_host: str = '0.0.0.0'
    bound_port: int = 0
    version: int = SOCKS_VERSION
    reserved: int = 0
    address_type: int = AddressType.IPV4

    SIZE = HEADER_SIZE + ADDRESS_SIZE

    @classmethod
    def success(cls, bound_host: str, bound_port: int) -> 'Reply':
        return cls(ReplyCode.SUCCEEDED, bound_host, bound_port)

    @classmethod
    def failure(cls) -> 'Reply':
        return cls(ReplyCode.GENERAL_FAILURE)

    def serialize(self) -> bytes:
        header = _HEADER_STRUCT.pack(self.version, self.reply_code, self.reserved, self.address_type)
        return header + encode_address(self.bound_host, self.bound_port)

    @classmethod
    def parse(cls, data: bytes) -> 'Reply':
        if len(data) != cls.SIZE:
            raise ProtocolError(f"回复长度错误: {len(data)} 字节")
        version, rep, rsv, atyp = _HEADER_STRUCT.unpack(data[:HEADER_SIZE])
        host, port = decode_address(data[HEADER_SIZE:])
        return cls(rep, host, port, version, rsv, atyp)


def method_reply(method: int) -> bytes:
    """方法选择回复: VER + METHOD"""
    return bytes([SOCKS_VERSION, method])


def auth_reply(status: int) -> bytes:
    """子协商回复: VER(1) + STATUS"""
    return bytes([AUTH_VERSION, status])


def select_method(methods: bytes) -> int:
    """从客户端提供的方法中选择用户名/密码认证，否则返回 0xFF"""
    if Method.USERNAME_PASSWORD in methods:
        return Method.USERNAME_PASSWORD
    return Method.NO_ACCEPTABLE
