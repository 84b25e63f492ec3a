"""
以 Kubernetes Secret 作为已签发证书与私钥的持久缓存。
"""

from __future__ import annotations

from loguru import logger

from .errors import CorruptEntryError
from .kube import SecretAPI
from .schemas import CertificateBundle

CERT_KEY = "cert"
PRIVATE_KEY_KEY = "key"


class SecretCache:
    def __init__(self, store: SecretAPI) -> None:
        self.store = store

    def get(self, name: str) -> CertificateBundle | None:
        """
        查找缓存的证书与私钥。
        :return: 两者齐全时返回 CertificateBundle；Secret 不存在时返回 None。
        :raises CorruptEntryError: 只存在 cert 或 key 之一。
        :raises TransportError: 底层存储访问失败。
        """
        data = self.store.get(name)
        if data is None:
            logger.info(f"Secret {name} 不存在")
            return None

        cert = data.get(CERT_KEY)
        key = data.get(PRIVATE_KEY_KEY)
        if not cert and not key:
            raise CorruptEntryError(f"Secret {name} 中缺少证书和私钥")
        if not cert:
            raise CorruptEntryError(f"Secret {name} 中缺少证书")
        if not key:
            raise CorruptEntryError(f"Secret {name} 中缺少私钥")
        return CertificateBundle(cert=cert, key=key)

    def put(self, name: str, bundle: CertificateBundle) -> None:
        """
        创建新的 Secret。
        :raises AlreadyExistsError: 同名 Secret 已存在，原有内容保持不变。
        """
        self.store.create(name, {CERT_KEY: bundle.cert, PRIVATE_KEY_KEY: bundle.key})
        logger.info(f"已将证书与私钥保存到 Secret {name}")
