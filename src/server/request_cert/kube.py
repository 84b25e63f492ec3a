"""
Kubernetes API 适配层。

公开接口：
- build_api_client: 构建已认证的 ApiClient（kubeconfig 或集群内配置）
- SigningRequestAPI / SecretAPI: 状态机与缓存依赖的最小接口，测试中可替换为内存实现
- KubeSigningRequestAPI: 基于 certificates.k8s.io/v1 的 CSR 读写
- KubeSecretAPI: 基于 core/v1 Secret 的读写

ApiException 在这一层被翻译成 errors 模块中的异常：409 → AlreadyExistsError，
404 → 不存在，其余 → 对应组件的错误。
"""

from __future__ import annotations

import base64
from typing import Dict, Protocol

import urllib3
from kubernetes import client
from kubernetes import config as kube_config
from kubernetes.client.rest import ApiException
from kubernetes.config import ConfigException
from loguru import logger

from .errors import AlreadyExistsError, ConfigError, SubmissionError, TransportError
from .schemas import SigningRequest, SigningRequestCondition

CONNECTION_ERRORS = (urllib3.exceptions.HTTPError, OSError)


class SigningRequestAPI(Protocol):
    def create(self, request: SigningRequest) -> SigningRequest:
        ...

    def get(self, name: str) -> SigningRequest:
        ...


class SecretAPI(Protocol):
    def create(self, name: str, data: Dict[str, bytes]) -> None:
        ...

    def get(self, name: str) -> Dict[str, bytes] | None:
        ...


def build_api_client(kubeconfig: str | None = None) -> client.ApiClient:
    """
    构建 Kubernetes ApiClient。
    :param kubeconfig: kubeconfig 路径；为空时优先使用集群内配置，其次回退到默认 kubeconfig。
    :raises ConfigError: 无法加载任何可用配置。
    """
    try:
        if kubeconfig:
            logger.debug(f"使用 kubeconfig: {kubeconfig}")
            return kube_config.new_client_from_config(config_file=kubeconfig)
        try:
            kube_config.load_incluster_config()
            logger.debug("使用集群内 ServiceAccount 配置")
        except ConfigException:
            kube_config.load_kube_config()
            logger.debug("使用默认 kubeconfig")
        return client.ApiClient()
    except (ConfigException, OSError) as e:
        raise ConfigError(f"构建 Kubernetes 客户端失败: {e}") from e


def _b64encode(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def _b64decode(value: str | bytes | None) -> bytes | None:
    if not value:
        return None
    return base64.b64decode(value)


def _from_kube_csr(obj: client.V1CertificateSigningRequest) -> SigningRequest:
    status = obj.status
    conditions = []
    if status is not None and status.conditions:
        conditions = [
            SigningRequestCondition(
                type=c.type,
                reason=c.reason or "",
                message=c.message or "",
                last_update_time=c.last_update_time,
            )
            for c in status.conditions
        ]
    return SigningRequest(
        name=obj.metadata.name,
        uid=obj.metadata.uid,
        request=_b64decode(obj.spec.request) or b"",
        usages=list(obj.spec.usages or []),
        signer_name=obj.spec.signer_name,
        conditions=conditions,
        certificate=_b64decode(status.certificate) if status is not None else None,
    )


class KubeSigningRequestAPI:
    """certificates.k8s.io/v1 CertificateSigningRequest 的创建与查询。"""

    def __init__(self, api_client: client.ApiClient, request_timeout: float | None = None) -> None:
        self._api = client.CertificatesV1Api(api_client)
        self.request_timeout = request_timeout

    def create(self, request: SigningRequest) -> SigningRequest:
        body = client.V1CertificateSigningRequest(
            api_version="certificates.k8s.io/v1",
            kind="CertificateSigningRequest",
            metadata=client.V1ObjectMeta(name=request.name),
            spec=client.V1CertificateSigningRequestSpec(
                request=_b64encode(request.request),
                usages=request.usages,
                signer_name=request.signer_name,
            ),
        )
        try:
            resp = self._api.create_certificate_signing_request(body, _request_timeout=self.request_timeout)
        except ApiException as e:
            if e.status == 409:
                raise AlreadyExistsError("CertificateSigningRequest", request.name) from e
            raise SubmissionError(f"CertificateSigningRequest.Create({request.name}) 失败: {e.status} {e.reason}") from e
        except CONNECTION_ERRORS as e:
            raise SubmissionError(f"CertificateSigningRequest.Create({request.name}) 失败: {e}") from e
        return _from_kube_csr(resp)

    def get(self, name: str) -> SigningRequest:
        try:
            resp = self._api.read_certificate_signing_request(name, _request_timeout=self.request_timeout)
        except ApiException as e:
            raise TransportError(f"从 Kubernetes API 获取 CSR {name} 失败: {e.status} {e.reason}") from e
        except CONNECTION_ERRORS as e:
            raise TransportError(f"从 Kubernetes API 获取 CSR {name} 失败: {e}") from e
        return _from_kube_csr(resp)


class KubeSecretAPI:
    """指定命名空间下 Opaque Secret 的创建与查询。"""

    def __init__(self, api_client: client.ApiClient, namespace: str, request_timeout: float | None = None) -> None:
        self._api = client.CoreV1Api(api_client)
        self.namespace = namespace
        self.request_timeout = request_timeout

    def create(self, name: str, data: Dict[str, bytes]) -> None:
        body = client.V1Secret(
            api_version="v1",
            kind="Secret",
            type="Opaque",
            metadata=client.V1ObjectMeta(name=name),
            data={k: _b64encode(v) for k, v in data.items()},
        )
        try:
            self._api.create_namespaced_secret(self.namespace, body, _request_timeout=self.request_timeout)
        except ApiException as e:
            if e.status == 409:
                raise AlreadyExistsError("Secret", name) from e
            raise TransportError(f"创建 Secret {self.namespace}/{name} 失败: {e.status} {e.reason}") from e
        except CONNECTION_ERRORS as e:
            raise TransportError(f"创建 Secret {self.namespace}/{name} 失败: {e}") from e

    def get(self, name: str) -> Dict[str, bytes] | None:
        try:
            secret = self._api.read_namespaced_secret(name, self.namespace, _request_timeout=self.request_timeout)
        except ApiException as e:
            if e.status == 404:
                return None
            raise TransportError(f"读取 Secret {self.namespace}/{name} 失败: {e.status} {e.reason}") from e
        except CONNECTION_ERRORS as e:
            raise TransportError(f"读取 Secret {self.namespace}/{name} 失败: {e}") from e
        return {k: _b64decode(v) or b"" for k, v in (secret.data or {}).items()}
