#!/usr/bin/env python3
"""
SOCKS5 协议帧测试

测试内容:
1. IPv4 地址/端口编解码
2. 请求头部校验
3. 回复序列化
4. 方法选择
"""

import pytest

from errors import ProtocolError
from protocol import (
    AddressType, Command, Method, Reply, ReplyCode, Request, RequestHeader,
    auth_reply, decode_address, encode_address, method_reply, select_method,
)


def test_encode_address_network_byte_order():
    assert encode_address('127.0.0.1', 80) == b'\x7f\x00\x00\x01\x00\x50'
    assert encode_address('10.1.2.3', 0xABCD) == b'\x0a\x01\x02\x03\xab\xcd'


def test_decode_address():
    assert decode_address(b'\xc0\xa8\x01\x02\x1f\x90') == ('192.168.1.2', 8080)


@pytest.mark.parametrize('data', [b'', b'\x7f\x00\x00\x01\x00', b'\x7f\x00\x00\x01\x00\x50\x00'])
def test_decode_address_wrong_size(data):
    with pytest.raises(ProtocolError):
        decode_address(data)


@pytest.mark.parametrize('addr,port', [('not-an-ip', 80), ('127.0.0.1', -1), ('127.0.0.1', 65536)])
def test_encode_address_invalid(addr, port):
    with pytest.raises(ProtocolError):
        encode_address(addr, port)


def test_request_header_valid():
    header = RequestHeader.parse(b'\x05\x01\x00\x01')
    header.validate()
    request = Request.from_parts(header, b'\x7f\x00\x00\x01\x00\x50')
    assert (request.host, request.port) == ('127.0.0.1', 80)
    assert request.serialize() == b'\x05\x01\x00\x01\x7f\x00\x00\x01\x00\x50'


@pytest.mark.parametrize('data', [
    b'\x04\x01\x00\x01',  # 版本
    b'\x05\x02\x00\x01',  # BIND
    b'\x05\x03\x00\x01',  # UDP ASSOCIATE
    b'\x05\x01\x01\x01',  # 保留字节
    b'\x05\x01\x00\x03',  # 域名
    b'\x05\x01\x00\x04',  # IPv6
])
def test_request_header_violations(data):
    with pytest.raises(ProtocolError):
        RequestHeader.parse(data).validate()


def test_reply_failure_is_zeroed():
    assert Reply.failure().serialize() == b'\x05\x01\x00\x01\x00\x00\x00\x00\x00\x00'


def test_reply_success_carries_bound_address():
    data = Reply.success('127.0.0.1', 54321).serialize()
    assert data == b'\x05\x00\x00\x01\x7f\x00\x00\x01' + (54321).to_bytes(2, 'big')

    reply = Reply.parse(data)
    assert reply.reply_code == ReplyCode.SUCCEEDED
    assert (reply.bound_host, reply.bound_port) == ('127.0.0.1', 54321)


def test_select_method():
    assert select_method(b'\x00\x02') == Method.USERNAME_PASSWORD
    assert select_method(b'\x02') == Method.USERNAME_PASSWORD
    assert select_method(b'\x03') == Method.NO_ACCEPTABLE
    assert select_method(b'') == Method.NO_ACCEPTABLE


def test_small_replies():
    assert method_reply(Method.USERNAME_PASSWORD) == b'\x05\x02'
    assert method_reply(Method.NO_ACCEPTABLE) == b'\x05\xff'
    assert auth_reply(0) == b'\x01\x00'
    assert auth_reply(1) == b'\x01\x01'


def test_only_supported_codes_are_defined():
    assert [m.value for m in Method] == [0x02, 0xFF]
    assert [c.value for c in Command] == [0x01]
    assert [a.value for a in AddressType] == [0x01]
