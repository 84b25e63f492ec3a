#!/usr/bin/env python
"""
命令行入口。

    python -m src.server.run request-cert --type=node --addresses=10.0.0.1,node-0.db
    python -m src.server.run request-cert --type=client --user=root --kubeconfig=~/.kube/config
    python -m src.server.run locality /etc/cockroach-locality --prefix=aws-

命令行参数优先于环境变量（REQUEST_CERT_*）、.env 与 config.json。
成功退出码为 0；任何致命错误退出码为 1。
"""

from __future__ import annotations

import argparse
import signal
import sys
import threading
from pathlib import Path
from typing import Any, Dict, List

from dotenv import load_dotenv
from loguru import logger
from pydantic import ValidationError

from src.server.config import Config
from src.server.locality.core import KubeNodeAPI, LocalityChecker, LocalityError
from src.server.request_cert.errors import ConfigError, RequestCertError
from src.server.request_cert.kube import KubeSecretAPI, KubeSigningRequestAPI, build_api_client
from src.server.request_cert.services import RequestCertContext, request_certificate


def _build_parser() -> argparse.ArgumentParser:
    # 两个子命令共用的参数，放在子命令之后
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--log-level", dest="log_level", default=None)
    common.add_argument("--kubeconfig", default=None, help="kubeconfig 路径，默认使用集群内配置")
    common.add_argument("--request-timeout", dest="request_timeout_seconds", type=float, default=None)

    parser = argparse.ArgumentParser(prog="request-cert", description="通过 Kubernetes CSR API 申请 TLS 证书")
    sub = parser.add_subparsers(dest="command", required=True)

    req = sub.add_parser("request-cert", parents=[common], help="申请节点或客户端证书")
    req.add_argument("--type", dest="certificate_type", choices=["node", "client"], default=None)
    req.add_argument("--addresses", default=None, help="节点证书的 DNS 名称与 IP 地址，逗号分隔")
    req.add_argument("--user", default=None, help="客户端证书的用户名")
    req.add_argument("--certs-dir", dest="certs_dir", default=None)
    req.add_argument("--key-size", dest="key_size", type=int, default=None)
    req.add_argument("--symlink-ca-from", dest="symlink_ca_from", default=None)
    req.add_argument("--namespace", default=None, help="保存 Secret 的命名空间")
    req.add_argument("--secret-name", dest="secret_name", default=None)
    req.add_argument("--no-secret", dest="store_secret", action="store_const", const=False, default=None)
    req.add_argument("--no-reuse", dest="allow_previous_csr", action="store_const", const=False, default=None)
    req.add_argument("--poll-interval", dest="poll_interval_seconds", type=float, default=None)
    req.add_argument("--timeout", dest="wait_timeout_seconds", type=float, default=None, help="0 表示一直等待")

    loc = sub.add_parser("locality", parents=[common], help="写入当前节点的 region/zone 信息")
    loc.add_argument("locality_path", nargs="?", metavar="path", default=None)
    loc.add_argument("--prefix", dest="locality_prefix", default=None)
    return parser


def _overrides(args: argparse.Namespace) -> Dict[str, Any]:
    values = {k: v for k, v in vars(args).items() if k != "command" and v is not None}
    return values


def configure_logging(level: str) -> None:
    logger.remove()
    logger.add(sys.stderr, level=level.upper())


def _install_cancel_handlers(cancel: threading.Event) -> None:
    def _handler(signum, frame):
        logger.warning(f"收到信号 {signum}，取消等待")
        cancel.set()

    signal.signal(signal.SIGTERM, _handler)
    signal.signal(signal.SIGINT, _handler)


def run_request_cert(settings: Config) -> None:
    api_client = build_api_client(settings.kubeconfig or None)
    ctx = RequestCertContext(
        settings=settings,
        signing_api=KubeSigningRequestAPI(api_client, settings.request_timeout_seconds),
        secret_api=(
            KubeSecretAPI(api_client, settings.namespace, settings.request_timeout_seconds)
            if settings.store_secret
            else None
        ),
    )
    _install_cancel_handlers(ctx.cancel)
    result = request_certificate(ctx)
    logger.info(f"证书就绪 (来源: {result.source}): {result.files.model_dump_json()}")


def run_locality(settings: Config) -> None:
    if not settings.node_name:
        raise ConfigError("必须设置 KUBERNETES_NODE")
    api_client = build_api_client(settings.kubeconfig or None)
    checker = LocalityChecker(
        KubeNodeAPI(api_client, settings.request_timeout_seconds),
        node_name=settings.node_name,
        write_path=settings.locality_path,
        error_on_missing_labels=settings.error_on_missing_labels,
        prefix=settings.locality_prefix,
    )
    logger.info(f"正在写入 locality 信息到 {settings.locality_path}")
    checker.write_locality()


def main(argv: List[str] | None = None) -> int:
    load_dotenv(Path.cwd() / ".env")
    args = _build_parser().parse_args(argv)
    try:
        settings = Config(**_overrides(args))
    except ValidationError as e:
        configure_logging("INFO")
        logger.error(f"配置无效: {e}")
        return 1
    configure_logging(settings.log_level)

    try:
        if args.command == "locality":
            run_locality(settings)
        else:
            run_request_cert(settings)
    except (RequestCertError, LocalityError) as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
