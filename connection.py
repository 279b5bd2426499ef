"""
telesock - 连接处理模块

处理单个 SOCKS5 客户端连接的完整生命周期:

    New -> Authenticating -> Negotiating -> Relaying -> Closed

1. 方法协商：只接受用户名/密码认证（0x02），否则回复 0xFF 并关闭
2. 子协商：校验用户名和密码，回复状态字节
3. 请求：只接受 IPv4 的 CONNECT，连接目标主机并回复绑定地址
4. 转发：双向原样转发数据
5. 关闭：无论从哪条路径退出，都恰好关闭每个连接一次

问候版本错误和请求头部错误没有对应的回复帧，直接关闭连接；
认证阶段总是先回复状态再关闭。
"""

import asyncio
import socket
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from auth import Authenticator
from config import Config
from errors import AuthError, DialError, ProtocolError, Socks5Error, TransportError
from logger import SessionLogger, get_session_logger
from protocol import (
    ADDRESS_SIZE, AUTH_VERSION, HEADER_SIZE, SOCKS_VERSION,
    AuthStatus, Method, Reply, Request, RequestHeader,
    auth_reply, method_reply, select_method,
)
from relay import Relay

LOGGER_NAME = 'telesock-connection'


class Stage(Enum):
    NEW = 'new'
    AUTHENTICATING = 'auth'
    NEGOTIATING = 'req'
    RELAYING = 'relay'
    CLOSED = 'closed'


@dataclass
class Session:
    """
    单个连接的状态

    Attributes:
        client_reader: 从客户端读取数据的流
        client_writer: 向客户端写入数据的流
        server_reader: 从目标主机读取数据的流（请求阶段成功后才有）
        server_writer: 向目标主机写入数据的流（请求阶段成功后才有）
        stage: 当前阶段
        authenticated: 是否已通过认证
        closed: 关闭是否已经执行
    """
    client_reader: asyncio.StreamReader
    client_writer: asyncio.StreamWriter
    server_reader: Optional[asyncio.StreamReader] = None
    server_writer: Optional[asyncio.StreamWriter] = None
    stage: Stage = Stage.NEW
    authenticated: bool = False
    closed: bool = False


class ConnectionHandler:
    """处理单个客户端连接的 SOCKS5 状态机"""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        config: Config,
        authenticator: Optional[Authenticator] = None,
    ):
        self.config = config
        self.authenticator = authenticator or Authenticator(config.credentials)
        self.session = Session(client_reader=reader, client_writer=writer)
        self.error: Optional[BaseException] = None

        peer = writer.get_extra_info('peername')
        self.peer_str = f"{peer[0]}:{peer[1]}" if peer else "unknown"
        self.log = get_session_logger(LOGGER_NAME, client=self.peer_str)

    @property
    def stage_log(self) -> SessionLogger:
        return self.log.with_context(step=self.session.stage.value)

    async def run(self):
        """主会话处理器"""
        self.log.info("连接已建立")
        try:
            await self._greeting()
            await self._authenticate()
            await self._request()
            await self._relay()
        except Socks5Error as e:
            self.error = e
            self.stage_log.error(f"{type(e).__name__}: {e}")
        except Exception as e:
            self.error = e
            self.stage_log.exception(f"会话意外错误: {e}")
        finally:
            await self.close()

    # ------------------------------------------------------------------
    # 读写辅助
    # ------------------------------------------------------------------

    async def _read_exactly(self, n: int) -> bytes:
        try:
            return await self.session.client_reader.readexactly(n)
        except asyncio.IncompleteReadError as e:
            raise ProtocolError(f"数据被截断: 需要 {n} 字节，实际 {len(e.partial)} 字节") from e
        except (ConnectionError, OSError) as e:
            raise TransportError(f"读取客户端数据失败: {e}") from e

    async def _read_byte(self) -> int:
        return (await self._read_exactly(1))[0]

    async def _write(self, data: bytes):
        writer = self.session.client_writer
        try:
            writer.write(data)
            await writer.drain()
        except (ConnectionError, OSError) as e:
            raise TransportError(f"向客户端写入数据失败: {e}") from e

    # ------------------------------------------------------------------
    # 各阶段
    # ------------------------------------------------------------------

    async def _greeting(self):
        """方法协商: VER NMETHODS METHODS -> VER METHOD"""
        self.session.stage = Stage.AUTHENTICATING

        version = await self._read_byte()
        if version != SOCKS_VERSION:
            raise ProtocolError(f"不支持的 SOCKS 协议版本 {version}")

        nmethods = await self._read_byte()
        methods = await self._read_exactly(nmethods)
        method = select_method(methods)

        await self._write(method_reply(method))
        if method == Method.NO_ACCEPTABLE:
            raise ProtocolError(f"客户端提供的方法中没有支持的认证方法: {list(methods)}")

    async def _authenticate(self):
        """用户名/密码子协商: VER ULEN UNAME PLEN PASSWD -> VER STATUS"""
        version = await self._read_byte()
        if version != AUTH_VERSION:
            raise ProtocolError(f"不支持的用户名/密码子协商版本 {version}")

        username = await self._read_field('用户名')
        password = await self._read_field('密码')

        ok = self.authenticator.verify(username, password)
        await self._write(auth_reply(AuthStatus.SUCCESS if ok else AuthStatus.FAILURE))
        if not ok:
            raise AuthError(f"用户名或密码无效 (用户名 {username!r})")

        self.session.authenticated = True
        self.log = self.log.with_context(user=username.decode('utf-8', errors='replace'))
        self.stage_log.info("认证成功")

    async def _read_field(self, name: str) -> bytes:
        length = await self._read_byte()
        if length == 0:
            raise ProtocolError(f"{name}长度为 0")
        return await self._read_exactly(length)

    async def _request(self):
        """CONNECT 请求: 连接目标主机并回复绑定地址"""
        self.session.stage = Stage.NEGOTIATING

        header = RequestHeader.parse(await self._read_exactly(HEADER_SIZE))
        header.validate()
        request = Request.from_parts(header, await self._read_exactly(ADDRESS_SIZE))

        log = self.stage_log
        log.info(f"正在连接 {request.host}:{request.port} ...")
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(request.host, request.port, family=socket.AF_INET),
                timeout=self.config.dial_timeout or None
            )
        except (OSError, asyncio.TimeoutError) as e:
            await self._write(Reply.failure().serialize())
            raise DialError(f"连接 {request.host}:{request.port} 失败: {e!r}") from e

        self.session.server_reader = reader
        self.session.server_writer = writer

        bound_host, bound_port = writer.get_extra_info('sockname')[:2]
        await self._write(Reply.success(bound_host, bound_port).serialize())
        log.info(f"连接 {bound_host}:{bound_port}->{request.host}:{request.port} 已建立")

    async def _relay(self):
        session = self.session
        if not session.authenticated or session.server_writer is None:
            raise RuntimeError("会话未认证或未连接目标主机，不能进入转发阶段")

        session.stage = Stage.RELAYING
        relay = Relay(
            session.client_reader, session.client_writer,
            session.server_reader, session.server_writer,
            close=self.close,
            log=self.stage_log,
        )
        await relay.run()

    # ------------------------------------------------------------------
    # 关闭
    # ------------------------------------------------------------------

    async def close(self):
        """
        关闭会话

        可以被调用任意次（包括两个转发方向同时调用），只有第一次调用会真正
        关闭连接。标志和两个 writer.close() 都在第一个 await 之前完成，
        调用方在等待期间被取消也不会留下未关闭的连接。
        """
        session = self.session
        if session.closed:
            return
        session.closed = True
        session.stage = Stage.CLOSED

        writers = [w for w in (session.server_writer, session.client_writer) if w is not None]
        for writer in writers:
            writer.close()
        try:
            await asyncio.shield(self._wait_closed(writers))
        finally:
            self.log.info("连接已关闭")

    async def _wait_closed(self, writers):
        for writer in writers:
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError) as e:
                # 连接已断开
                self.log.debug(f"关闭连接时出错: {e}")
