"""
证书申请的业务流程层：把缓存、CSR 构建、审批等待与落盘串成一条线性流水线。

流程：
    Secret 缓存命中 → 直接落盘
    未命中 → 构建模板 → 生成私钥与 CSR → 提交并等待签发 → 写入 Secret → 落盘
"""

from __future__ import annotations

import socket
import threading
import time
from dataclasses import dataclass, field
from typing import Callable

from loguru import logger
from pydantic import ValidationError

from src.server.config import Config

from . import core
from .errors import ConfigError
from .files import persist
from .kube import SecretAPI, SigningRequestAPI
from .manager import CertificateRequestManager, EventSink, log_event
from .schemas import CertificateBundle, ClientIdentity, Identity, NodeIdentity, ProvisionResult
from .secret_cache import SecretCache


@dataclass
class RequestCertContext:
    """一次调用所需的全部外部依赖与配置，显式传入流水线。"""

    settings: Config
    signing_api: SigningRequestAPI
    secret_api: SecretAPI | None = None
    sink: EventSink = log_event
    cancel: threading.Event = field(default_factory=threading.Event)
    clock: Callable[[], float] = time.monotonic
    wait: Callable[[float], bool] | None = None


def identity_from_config(settings: Config) -> Identity:
    """
    根据配置构建申请者身份。
    :raises ConfigError: 类型未知，或缺少 addresses / user。
    """
    if settings.certificate_type == "node":
        if not settings.addresses:
            raise ConfigError("申请节点证书，但 addresses 为空")
        try:
            return NodeIdentity(hosts=settings.addresses)
        except ValidationError as e:
            raise ConfigError(f"节点地址无效: {e}") from e
    if settings.certificate_type == "client":
        if not settings.user:
            raise ConfigError("申请客户端证书，但 user 为空")
        return ClientIdentity(username=settings.user)
    raise ConfigError(f'未知的证书类型: type={settings.certificate_type!r}，可选值为 "node"、"client"')


def _issue_certificate(
    ctx: RequestCertContext, identity: Identity, csr_name: str
) -> CertificateBundle:
    settings = ctx.settings
    template = core.build_template(identity, organization=settings.organization)
    key_pem, csr_pem = core.generate(template, settings.key_size)

    manager = CertificateRequestManager(
        ctx.signing_api,
        sink=ctx.sink,
        cancel=ctx.cancel,
        clock=ctx.clock,
        wait=ctx.wait,
        progress_interval=settings.progress_interval_seconds,
        max_poll_errors=settings.max_poll_errors,
        server_signer_name=settings.server_signer_name,
        client_signer_name=settings.client_signer_name,
    )
    handle = manager.submit(
        csr_name,
        csr_pem,
        core.wants_server_auth(identity),
        allow_reuse=settings.allow_previous_csr,
    )
    cert_pem = manager.await_certificate(
        handle,
        poll_interval=settings.poll_interval_seconds,
        timeout=settings.wait_timeout_seconds or None,
    )
    # 复用的旧 CSR 对应的是上一次生成的私钥
    core.verify_key_pair(csr_name, cert_pem, key_pem)
    return CertificateBundle(cert=cert_pem, key=key_pem)


def request_certificate(ctx: RequestCertContext, hostname: str | None = None) -> ProvisionResult:
    """
    执行一次完整的证书申请流程。
    :param ctx: 调用上下文。
    :param hostname: 用于拼接 CSR 名称的主机名，默认取本机主机名。
    :return: ProvisionResult，标明证书来源（缓存或新签发）与写入的文件。
    """
    settings = ctx.settings
    identity = identity_from_config(settings)
    prefix = core.file_prefix(identity)
    csr_name = core.build_csr_name(prefix, hostname if hostname is not None else socket.gethostname())

    cache = None
    secret_name = None
    if settings.store_secret and ctx.secret_api is not None:
        secret_name = settings.secret_name or csr_name
        cache = SecretCache(ctx.secret_api)

    bundle = cache.get(secret_name) if cache is not None else None
    if bundle is not None:
        logger.info(f"在 Secret {secret_name} 中找到已签发的证书，跳过 CSR 申请")
        source = "cache"
    else:
        bundle = _issue_certificate(ctx, identity, csr_name)
        if cache is not None:
            cache.put(secret_name, bundle)
        source = "issued"

    files = persist(
        settings.certs_dir,
        prefix,
        bundle.cert,
        bundle.key,
        settings.symlink_ca_from or None,
    )
    return ProvisionResult(source=source, csr_name=csr_name, secret_name=secret_name, files=files)
