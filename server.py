#!/usr/bin/env python3
"""
telesock - 快速简单的 SOCKS5 代理

协议:
1. 方法协商 - 只接受用户名/密码认证
2. 用户名/密码子协商（RFC 1929）
3. IPv4 CONNECT 请求
4. 双向原样转发

功能:
- 支持多用户，凭据在 YAML 配置文件中配置
- 为每个用户生成 Telegram 代理分享链接
- 收到 SIGINT/SIGTERM 后停止接受新连接，等待现有会话结束
- 定期报告连接统计和进程资源使用情况
"""

import argparse
import asyncio
import logging
import os
import signal
import socket
from typing import Dict, Optional, Set, Tuple

import psutil

from auth import Authenticator
from config import DEFAULT_CONFIG_FILE, Config, load_config, share_links
from connection import ConnectionHandler
from errors import ConfigError
from logger import setup_logging

logger = logging.getLogger('telesock-server')


def parse_listen_address(address: str) -> Tuple[Optional[str], int]:
    """
    解析监听地址

    Args:
        address: "host:port" 或 ":port"，主机为空表示监听所有接口

    Returns:
        Tuple[Optional[str], int]: (主机或 None, 端口)

    Raises:
        ValueError: 地址格式错误或端口超出范围
    """
    host, sep, port_str = address.rpartition(':')
    if not sep:
        raise ValueError(f"缺少端口: {address!r}")
    try:
        port = int(port_str)
    except ValueError:
        raise ValueError(f"无效的端口: {port_str!r}") from None
    if not 0 <= port <= 65535:
        raise ValueError(f"端口超出范围: {port}")
    host = host.strip('[]')
    return host or None, port


# ============================================================================
# 服务端
# ============================================================================

class Socks5Server:
    """
    SOCKS5 代理服务端

    接受客户端连接，为每个连接创建 ConnectionHandler。所有会话共享同一个
    只读的 Config 和 Authenticator。

    Attributes:
        config: 代理配置
        host: 监听地址（None 表示所有接口）
        port: 监听端口（0 表示由系统分配）
        sessions: 正在运行的会话任务
    """

    def __init__(self, config: Config, host: Optional[str] = None, port: int = 1080):
        self.config = config
        self.host = host
        self.port = port
        self.authenticator = Authenticator(config.credentials)
        self.sessions: Set[asyncio.Task] = set()

        self.total_connections = 0
        self.failed_connections = 0

        self._server: Optional[asyncio.AbstractServer] = None
        self._stopped: Optional[asyncio.Event] = None

    @property
    def address(self) -> Tuple[str, int]:
        """实际监听的地址（启动后可用）"""
        return self._server.sockets[0].getsockname()[:2]

    async def start(self) -> Tuple[str, int]:
        """开始监听"""
        self._stopped = asyncio.Event()
        self._server = await asyncio.start_server(self._handle_client, self.host, self.port)
        addr = self.address
        logger.info(f"监听已启动: {addr[0]}:{addr[1]}")
        return addr

    def stop(self):
        """停止接受新连接，现有会话继续运行直到结束"""
        if self._server is not None:
            self._server.close()
        if self._stopped is not None:
            self._stopped.set()

    async def serve(self):
        """运行直到 stop() 被调用，然后等待所有会话结束"""
        if self._server is None:
            await self.start()

        stats_task = None
        if self.config.stats_interval:
            stats_task = asyncio.create_task(self._report_stats())

        try:
            await self._stopped.wait()
        finally:
            self._server.close()
            if stats_task is not None:
                stats_task.cancel()
                await asyncio.gather(stats_task, return_exceptions=True)
            await self._drain()
            await self._server.wait_closed()
            logger.info("监听已关闭")

    async def _drain(self):
        """等待会话结束，超过 shutdown_timeout 后取消剩余会话"""
        if not self.sessions:
            return

        logger.info(f"等待 {len(self.sessions)} 个会话结束...")
        _, pending = await asyncio.wait(set(self.sessions), timeout=self.config.shutdown_timeout)
        if pending:
            logger.warning(f"等待超时，强制关闭 {len(pending)} 个会话")
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        """处理客户端连接"""
        self.total_connections += 1
        self._set_buffer_sizes(writer)

        task = asyncio.current_task()
        self.sessions.add(task)
        handler = ConnectionHandler(reader, writer, self.config, self.authenticator)
        try:
            await handler.run()
        finally:
            self.sessions.discard(task)
            if handler.error is not None:
                self.failed_connections += 1

    def _set_buffer_sizes(self, writer: asyncio.StreamWriter):
        size = self.config.socket_buffer_size
        sock = writer.get_extra_info('socket')
        if not size or sock is None:
            return
        for option in (socket.SO_RCVBUF, socket.SO_SNDBUF):
            try:
                sock.setsockopt(socket.SOL_SOCKET, option, size)
            except OSError as e:
                logger.warning(f"设置 socket 缓冲区大小失败: {e}")

    def stats(self) -> Dict[str, float]:
        """当前连接统计和进程资源使用情况"""
        proc = psutil.Process(os.getpid())
        return {
            'total': self.total_connections,
            'failed': self.failed_connections,
            'active': len(self.sessions),
            'num_fds': proc.num_fds() if hasattr(proc, 'num_fds') else 0,
            'memory_mb': proc.memory_info().rss / 1024 / 1024,
        }

    async def _report_stats(self):
        """定期报告连接统计"""
        while True:
            await asyncio.sleep(self.config.stats_interval)
            try:
                stats = self.stats()
            except psutil.Error as e:
                logger.warning(f"获取进程信息失败: {e}")
                continue
            logger.info(f"连接统计: 总计={stats['total']}, "
                        f"失败={stats['failed']}, "
                        f"活跃={stats['active']}, "
                        f"文件描述符={stats['num_fds']}, "
                        f"内存={stats['memory_mb']:.1f}MB")


# ============================================================================
# 命令行入口
# ============================================================================

async def run_server(server: Socks5Server):
    """启动服务端并在收到 SIGINT/SIGTERM 时停止"""
    loop = asyncio.get_running_loop()
    signals = (signal.SIGTERM, signal.SIGINT)

    def on_signal(sig: signal.Signals):
        # 第二次收到信号时按默认方式处理
        for s in signals:
            loop.remove_signal_handler(s)
        logger.warning(f"收到信号 {sig.name} ({int(sig)})，正在关闭...")
        server.stop()

    await server.start()
    for sig in signals:
        try:
            loop.add_signal_handler(sig, on_signal, sig)
        except NotImplementedError:
            # Windows 上没有 add_signal_handler，由 main() 捕获 KeyboardInterrupt
            logger.debug(f"无法注册信号处理器: {sig.name}")
    await server.serve()


def main(argv=None) -> int:
    """主函数"""
    parser = argparse.ArgumentParser(description='telesock - 快速简单的 SOCKS5 代理')
    parser.add_argument('--tcp-listen', default=':1080', help='TCP 监听地址（默认: :1080）')
    parser.add_argument('--config', '-c', default=DEFAULT_CONFIG_FILE, help='配置文件路径')
    parser.add_argument('--verbose', '-v', action='store_true', help='记录 INFO 级别日志')
    parser.add_argument('--debug', '-d', action='store_true', help='记录 DEBUG 级别日志（包含 --verbose）')
    args = parser.parse_args(argv)

    manager = setup_logging()
    manager.set_level(logging.INFO)

    try:
        host, port = parse_listen_address(args.tcp_listen)
    except ValueError as e:
        logger.error(f"无效的监听地址: {e}")
        return 1

    try:
        config = load_config(args.config)
    except ConfigError as e:
        logger.error(str(e))
        return 1

    # 使用配置文件中的日志设置，分享链接在调整级别之前输出
    manager.initialize(config.log)
    manager.set_level(logging.INFO)
    for username, link in share_links(config, port):
        logger.info(f"{username:>20}: {link}")

    if args.debug:
        manager.set_level(logging.DEBUG)
    elif args.verbose:
        manager.set_level(logging.INFO)
    else:
        manager.set_level(manager.config.level)

    server = Socks5Server(config, host, port)
    try:
        asyncio.run(run_server(server))
    except KeyboardInterrupt:
        logger.info("服务端已停止")
    except OSError as e:
        logger.error(f"无法监听 {args.tcp_listen}: {e}")
        return 1

    return 0


if __name__ == '__main__':
    exit(main())
