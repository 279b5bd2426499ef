"""
telesock - 用户名/密码认证模块

使用恒定时间比较验证客户端提供的凭据。
"""

import hmac
from typing import Sequence

from config import Credential


class Authenticator:
    """
    凭据验证器

    持有配置中凭据元组的引用（不复制），只读使用，可被所有会话共享。

    Attributes:
        credentials: 已配置的用户凭据
    """

    def __init__(self, credentials: Sequence[Credential]):
        self.credentials = credentials

    def verify(self, username: bytes, password: bytes) -> bool:
        """
        验证用户名和密码

        每个凭据的用户名和密码都用 hmac.compare_digest 比较，并且总是扫描
        完整个列表，不在第一次匹配时返回，耗时与匹配位置无关。

        Args:
            username: 客户端提供的用户名
            password: 客户端提供的密码

        Returns:
            bool: 是否有任一凭据同时匹配用户名和密码
        """
        found = False
        for credential in self.credentials:
            username_ok = hmac.compare_digest(username, credential.username)
            password_ok = hmac.compare_digest(password, credential.password)
            found |= username_ok & password_ok
        return found
