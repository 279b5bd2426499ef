"""
telesock - 日志管理模块

功能概述:
本模块提供了代理的日志管理功能，包括：
1. 多级别日志记录（DEBUG, INFO, WARNING, ERROR, CRITICAL）
2. 按大小轮转的日志文件（可选）
3. 结构化日志格式（时间戳、级别、会话上下文）
4. 配置文件和环境变量支持

每个会话使用 SessionLogger 记录日志，客户端地址和当前阶段会出现在
格式字符串的 [%(context)s] 位置。
"""

import logging
import logging.handlers
import os
import sys
from dataclasses import dataclass, replace
from typing import Optional


DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(context)s] - %(message)s"


@dataclass(frozen=True)
class LogConfig:
    """
    日志配置数据类

    Attributes:
        level: 日志级别（DEBUG, INFO, WARNING, ERROR, CRITICAL）
        log_file: 日志文件路径，None 表示不写文件
        max_bytes: 单个日志文件最大大小（字节）
        backup_count: 保留的备份文件数量
        format_string: 日志格式字符串
        enable_console: 是否输出到控制台
    """
    level: str = "WARNING"
    log_file: Optional[str] = None
    max_bytes: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 10
    format_string: str = DEFAULT_FORMAT
    enable_console: bool = True

    def with_env(self) -> 'LogConfig':
        """用环境变量 LOG_LEVEL / LOG_FILE / LOG_FORMAT 覆盖配置"""
        return replace(
            self,
            level=os.getenv('LOG_LEVEL', self.level),
            log_file=os.getenv('LOG_FILE', self.log_file),
            format_string=os.getenv('LOG_FORMAT', self.format_string),
        )


class LogFormatter(logging.Formatter):
    """
    自定义日志格式化器

    支持彩色输出，并保证 context 字段存在
    """

    COLORS = {
        'DEBUG': '\033[36m',      # 青色
        'INFO': '\033[32m',       # 绿色
        'WARNING': '\033[33m',    # 黄色
        'ERROR': '\033[31m',      # 红色
        'CRITICAL': '\033[35m',   # 紫色
    }
    RESET = '\033[0m'

    def __init__(self, fmt=None, datefmt=None, style='%', use_color=False):
        super().__init__(fmt, datefmt, style)
        self.use_color = use_color

    def format(self, record):
        # 不经过 SessionLogger 的记录没有上下文
        if not hasattr(record, 'context'):
            record.context = "-"

        levelname = record.levelname
        if self.use_color and levelname in self.COLORS:
            record.levelname = f"{self.COLORS[levelname]}{levelname}{self.RESET}"

        try:
            return super().format(record)
        finally:
            record.levelname = levelname


class SessionLogger(logging.LoggerAdapter):
    """
    会话日志适配器

    将会话上下文（如 client=1.2.3.4:5678 | step=auth）附加到每条日志记录。

    Example:
        >>> log = SessionLogger(logger, client='127.0.0.1:50000')
        >>> log.with_context(step='req').error("不支持的命令 2")
    """

    def __init__(self, logger: logging.Logger, **context):
        super().__init__(logger, context)

    def with_context(self, **context) -> 'SessionLogger':
        merged = dict(self.extra)
        merged.update(context)
        return SessionLogger(self.logger, **merged)

    @property
    def context(self) -> str:
        return " | ".join(f"{key}={value}" for key, value in self.extra.items()) or "-"

    def process(self, msg, kwargs):
        extra = kwargs.setdefault('extra', {})
        extra.setdefault('context', self.context)
        return msg, kwargs


class LoggerManager:
    """
    日志管理器

    管理日志系统的初始化和级别调整
    """

    _instance = None
    _initialized = False

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if not self._initialized:
            self.config = None
            self.handlers = []
            self._initialized = True

    def initialize(self, config: Optional[LogConfig] = None):
        """
        初始化日志系统

        Args:
            config: 日志配置对象（可选，默认从环境变量读取）
        """
        self.config = (config or LogConfig()).with_env()
        self._setup_root_logger()

    def _setup_root_logger(self):
        root_logger = logging.getLogger()
        for handler in self.handlers:
            root_logger.removeHandler(handler)
            handler.close()
        self.handlers = []

        if self.config.enable_console:
            self._add_handler(root_logger, self._console_handler())

        if self.config.log_file:
            self._add_handler(root_logger, self._file_handler())

        self.set_level(self.config.level)

    def _add_handler(self, logger: logging.Logger, handler: logging.Handler):
        logger.addHandler(handler)
        self.handlers.append(handler)

    def _console_handler(self) -> logging.Handler:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(LogFormatter(
            fmt=self.config.format_string,
            datefmt='%Y-%m-%d %H:%M:%S',
            use_color=sys.stderr.isatty()
        ))
        return handler

    def _file_handler(self) -> logging.Handler:
        """添加文件处理器（按大小轮转）"""
        handler = logging.handlers.RotatingFileHandler(
            filename=self.config.log_file,
            maxBytes=self.config.max_bytes,
            backupCount=self.config.backup_count,
            encoding='utf-8'
        )
        handler.setFormatter(LogFormatter(
            fmt=self.config.format_string,
            datefmt='%Y-%m-%d %H:%M:%S',
            use_color=False
        ))
        return handler

    def set_level(self, level):
        """
        设置根日志记录器级别

        Args:
            level: 级别名称（如 "INFO"）或 logging 常量
        """
        if isinstance(level, str):
            level = getattr(logging, level.upper(), logging.WARNING)
        logging.getLogger().setLevel(level)


def setup_logging(config: Optional[LogConfig] = None) -> LoggerManager:
    """初始化日志系统（便捷函数）"""
    manager = LoggerManager()
    manager.initialize(config)
    return manager


def get_session_logger(name: str, **context) -> SessionLogger:
    """获取带会话上下文的日志记录器（便捷函数）"""
    return SessionLogger(logging.getLogger(name), **context)
