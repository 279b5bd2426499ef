"""
telesock - 双向数据转发模块

在客户端和目标主机之间原样转发字节，直到任一方向结束。
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict

logger = logging.getLogger('telesock-relay')

RELAY_CHUNK_SIZE = 32768


class Relay:
    """
    双向转发协调器

    一个方向（目标 -> 客户端）在调用者的任务中运行，另一个方向
    （客户端 -> 目标）在单独创建的任务中运行。任一方向遇到 EOF 或 I/O 错误
    都会调用共享的 close 回调关闭两端连接，另一方向随之读到 EOF 并结束。

    Attributes:
        close: 会话的关闭协程函数，必须是幂等的
        transferred: 每个方向已转发的字节数
    """

    def __init__(
        self,
        client_reader: asyncio.StreamReader,
        client_writer: asyncio.StreamWriter,
        server_reader: asyncio.StreamReader,
        server_writer: asyncio.StreamWriter,
        close: Callable[[], Awaitable[None]],
        log: logging.LoggerAdapter = None,
        chunk_size: int = RELAY_CHUNK_SIZE,
    ):
        self.client_reader = client_reader
        self.client_writer = client_writer
        self.server_reader = server_reader
        self.server_writer = server_writer
        self.close = close
        self.log = log or logger
        self.chunk_size = chunk_size
        self.transferred: Dict[str, int] = {'client': 0, 'server': 0}

    async def run(self):
        """运行转发，直到两个方向都结束且连接已关闭"""
        upstream = asyncio.create_task(
            self._copy(self.client_reader, self.server_writer, 'client')
        )
        try:
            await self._copy(self.server_reader, self.client_writer, 'server')
        finally:
            await self.close()
            # 连接已关闭，客户端方向会读到 EOF 自行结束
            try:
                await asyncio.wait({upstream})
            finally:
                if not upstream.done():
                    upstream.cancel()
            self.log.debug(
                f"转发结束: 客户端->目标 {self.transferred['client']} 字节, "
                f"目标->客户端 {self.transferred['server']} 字节"
            )

    async def _copy(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter, source: str):
        """
        从 reader 读取数据并原样写入 writer

        Args:
            source: 数据来源（'client' 或 'server'），用于日志和统计
        """
        try:
            while True:
                data = await reader.read(self.chunk_size)
                if not data:
                    self.log.debug(f"{source} 关闭连接")
                    break
                writer.write(data)
                await writer.drain()
                self.transferred[source] += len(data)
        except (ConnectionError, OSError) as e:
            self.log.error(f"转发 {source} 数据失败: {e}")
        finally:
            await self.close()
