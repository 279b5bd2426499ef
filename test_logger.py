#!/usr/bin/env python3
"""
日志模块测试
"""

import logging

from logger import LogConfig, LogFormatter, LoggerManager, SessionLogger, get_session_logger


def test_session_logger_renders_context(caplog):
    caplog.set_level(logging.INFO)
    log = get_session_logger('telesock-test', client='10.0.0.1:5000')
    log.with_context(step='auth').info("认证成功")
    log.info("连接已关闭")

    first, second = caplog.records[-2:]
    assert first.context == 'client=10.0.0.1:5000 | step=auth'
    assert second.context == 'client=10.0.0.1:5000'


def test_with_context_does_not_mutate_parent():
    log = SessionLogger(logging.getLogger('telesock-test'), client='a')
    child = log.with_context(step='req')
    assert log.extra == {'client': 'a'}
    assert child.extra == {'client': 'a', 'step': 'req'}


def test_formatter_without_context():
    formatter = LogFormatter(fmt='[%(context)s] %(levelname)s %(message)s')
    record = logging.LogRecord('x', logging.WARNING, __file__, 1, 'msg', None, None)
    assert formatter.format(record) == '[-] WARNING msg'


def test_formatter_color_restores_levelname():
    formatter = LogFormatter(fmt='%(levelname)s', use_color=True)
    record = logging.LogRecord('x', logging.ERROR, __file__, 1, 'msg', None, None)
    assert formatter.format(record) == '\033[31mERROR\033[0m'
    assert record.levelname == 'ERROR'


def test_env_overrides(monkeypatch):
    monkeypatch.setenv('LOG_LEVEL', 'DEBUG')
    monkeypatch.delenv('LOG_FILE', raising=False)
    monkeypatch.delenv('LOG_FORMAT', raising=False)
    assert LogConfig(level='INFO').with_env().level == 'DEBUG'


def test_file_handler(tmp_path, monkeypatch):
    for name in ('LOG_LEVEL', 'LOG_FILE', 'LOG_FORMAT'):
        monkeypatch.delenv(name, raising=False)
    log_file = tmp_path / 'telesock.log'
    manager = LoggerManager()
    root = logging.getLogger()
    previous_level = root.level
    try:
        manager.initialize(LogConfig(level='INFO', log_file=str(log_file), enable_console=False))
        get_session_logger('telesock-test', client='1.2.3.4:5').info("已写入文件")
        for handler in manager.handlers:
            handler.flush()
        assert '[client=1.2.3.4:5] - 已写入文件' in log_file.read_text(encoding='utf-8')
    finally:
        for handler in manager.handlers:
            root.removeHandler(handler)
            handler.close()
        manager.handlers = []
        root.setLevel(previous_level)


def test_connection_handler_uses_session_logger(caplog):
    from config import Config
    from connection import LOGGER_NAME, ConnectionHandler

    class Writer:
        def get_extra_info(self, name, default=None):
            return ('10.0.0.2', 6000) if name == 'peername' else default

    caplog.set_level(logging.INFO, logger=LOGGER_NAME)
    handler = ConnectionHandler(None, Writer(), Config())
    assert isinstance(handler.log, SessionLogger)
    handler.stage_log.info("连接已建立")

    record = caplog.records[-1]
    assert record.name == LOGGER_NAME
    assert record.context == 'client=10.0.0.2:6000 | step=new'
