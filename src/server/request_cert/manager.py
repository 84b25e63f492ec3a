"""
CSR 提交与审批等待的状态机。

状态流转：
    submitted → pending → approved_no_cert → issued
                        ↘ denied
    pending / approved_no_cert 还可能进入 timeout 或 cancelled。

公开接口：
- CertificateRequestManager.submit: 提交 CSR，可选地复用同名的已有 CSR
- CertificateRequestManager.await_certificate: 轮询直到签发、拒绝、超时或取消
- classify: 根据 CSR 对象当前内容判定状态（纯函数）
- log_event: 默认事件输出，写入 loguru

状态机只通过 EventSink 报告进度，本身不直接打印日志。
"""

from __future__ import annotations

import threading
import time
from typing import Callable, List

from loguru import logger

from .errors import (
    AlreadyExistsError,
    DenialError,
    PendingTimeoutError,
    RequestCancelledError,
    SubmissionError,
    TransportError,
)
from .kube import SigningRequestAPI
from .schemas import ProgressEvent, RequestState, SigningRequest, SubmittedRequest

USAGE_DIGITAL_SIGNATURE = "digital signature"
USAGE_KEY_ENCIPHERMENT = "key encipherment"
USAGE_CLIENT_AUTH = "client auth"
USAGE_SERVER_AUTH = "server auth"

# 节点需要同时具备 server + client 用途
SERVER_SIGNER_NAME = "kubernetes.io/legacy-unknown"
CLIENT_SIGNER_NAME = "kubernetes.io/kube-apiserver-client"

CONDITION_APPROVED = "Approved"

MIN_POLL_INTERVAL = 1.0
DEFAULT_PROGRESS_INTERVAL = 30.0

EventSink = Callable[[ProgressEvent], None]


def log_event(event: ProgressEvent) -> None:
    """默认的事件输出：按事件级别写入 loguru。"""
    extra = ", ".join(f"{k}={v}" for k, v in event.fields.items())
    text = f"[{event.name}] {event.state.value}: {event.message}"
    if extra:
        text = f"{text} ({extra})"
    logger.log(event.level.upper(), text)


def key_usages(want_server_auth: bool) -> List[str]:
    usages = [USAGE_DIGITAL_SIGNATURE, USAGE_KEY_ENCIPHERMENT, USAGE_CLIENT_AUTH]
    if want_server_auth:
        usages.append(USAGE_SERVER_AUTH)
    return usages


def classify(request: SigningRequest) -> RequestState:
    """
    判定 CSR 当前状态，只以最后一条 condition 为准。
    非 Approved 的 condition 直接判定为拒绝，不再检查证书字段。
    """
    condition = request.latest_condition
    if condition is None:
        return RequestState.PENDING
    if condition.type != CONDITION_APPROVED:
        return RequestState.DENIED
    if not request.certificate:
        return RequestState.APPROVED_NO_CERT
    return RequestState.ISSUED


class CertificateRequestManager:
    """
    :param api: CSR 读写接口（生产环境为 KubeSigningRequestAPI）。
    :param sink: 进度事件的接收者。
    :param cancel: 外部取消信号；被置位后当前等待立即结束。
    :param clock: 单调时钟，用于超时与心跳计算。
    :param wait: 等待函数，返回 True 表示已被取消；默认使用 cancel.wait。
    :param progress_interval: “仍在等待审批”心跳的最小间隔（秒），0 表示每次轮询都输出。
    :param max_poll_errors: 轮询时允许连续失败的次数，0 表示第一次失败即放弃。
    """

    def __init__(
        self,
        api: SigningRequestAPI,
        *,
        sink: EventSink = log_event,
        cancel: threading.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
        wait: Callable[[float], bool] | None = None,
        progress_interval: float = DEFAULT_PROGRESS_INTERVAL,
        max_poll_errors: int = 0,
        server_signer_name: str = SERVER_SIGNER_NAME,
        client_signer_name: str = CLIENT_SIGNER_NAME,
    ) -> None:
        self.api = api
        self.sink = sink
        self.cancel = cancel if cancel is not None else threading.Event()
        self.clock = clock
        self.wait = wait if wait is not None else self.cancel.wait
        self.progress_interval = progress_interval
        self.max_poll_errors = max_poll_errors
        self.server_signer_name = server_signer_name
        self.client_signer_name = client_signer_name

    def _emit(self, name: str, state: RequestState, message: str, /, level: str = "info", **fields) -> None:
        self.sink(ProgressEvent(name=name, state=state, message=message, level=level, fields=fields))

    def submit(self, name: str, csr: bytes, want_server_auth: bool, allow_reuse: bool = True) -> SubmittedRequest:
        """
        创建 CertificateSigningRequest。
        :param allow_reuse: 同名 CSR 已存在时是否复用它（幂等重试）。
        :raises AlreadyExistsError: 同名 CSR 已存在且不允许复用。
        :raises SubmissionError: 其它创建失败。
        """
        signer_name = self.server_signer_name if want_server_auth else self.client_signer_name
        request = SigningRequest(
            name=name,
            request=csr,
            usages=key_usages(want_server_auth),
            signer_name=signer_name,
        )
        self._emit(
            name,
            RequestState.SUBMITTED,
            "正在创建 CSR",
            signer=signer_name,
            server_auth=want_server_auth,
        )

        reused = False
        try:
            created = self.api.create(request)
        except AlreadyExistsError:
            if not allow_reuse:
                raise
            self._emit(name, RequestState.SUBMITTED, "同名 CSR 已存在，尝试复用")
            try:
                created = self.api.get(name)
            except TransportError as e:
                raise SubmissionError(f"获取已有 CSR {name} 失败: {e}") from e
            reused = True

        self._emit(
            name,
            RequestState.PENDING,
            f"CSR 已提交，等待审批。批准命令: kubectl certificate approve {name}",
            uid=created.uid,
        )
        return SubmittedRequest(name=name, uid=created.uid, reused=reused)

    def await_certificate(
        self,
        handle: SubmittedRequest,
        poll_interval: float = MIN_POLL_INTERVAL,
        timeout: float | None = None,
    ) -> bytes:
        """
        每隔 poll_interval 秒查询一次 CSR，直到出现终态。
        :param timeout: 最长等待秒数，None 或 0 表示一直等待。
        :return: 签发的证书（PEM）。
        :raises DenialError: 最新 condition 不是 Approved。
        :raises PendingTimeoutError: 超时仍未签发。
        :raises RequestCancelledError: 等待被取消。
        :raises TransportError: 连续查询失败超过 max_poll_errors。
        """
        name = handle.name
        interval = max(poll_interval, MIN_POLL_INTERVAL)
        started = self.clock()
        deadline = started + timeout if timeout else None
        last_progress = started
        state = RequestState.PENDING
        poll_errors = 0

        while True:
            wait_for = interval
            if deadline is not None:
                remaining = deadline - self.clock()
                if remaining <= 0:
                    self._emit(name, RequestState.TIMEOUT, "等待审批超时", level="error", last_state=state.value)
                    raise PendingTimeoutError(f"等待 CSR {name} 审批超时 ({timeout}s)，最后状态: {state.value}")
                wait_for = min(wait_for, remaining)

            if self.wait(wait_for):
                self._emit(name, RequestState.CANCELLED, "等待已取消", level="warning", last_state=state.value)
                raise RequestCancelledError(f"等待 CSR {name} 被取消")

            try:
                current = self.api.get(name)
            except TransportError as e:
                poll_errors += 1
                if poll_errors > self.max_poll_errors:
                    raise
                self._emit(name, state, f"查询 CSR 失败，将重试: {e}", level="warning", attempt=poll_errors)
                continue
            poll_errors = 0

            if handle.uid and current.uid != handle.uid:
                self._emit(
                    name,
                    state,
                    "CSR 的 UID 与提交时不一致",
                    level="warning",
                    expected=handle.uid,
                    actual=current.uid,
                )

            new_state = classify(current)
            if new_state is RequestState.DENIED:
                condition = current.latest_condition
                self._emit(
                    name,
                    RequestState.DENIED,
                    "CSR 未被批准",
                    level="error",
                    type=condition.type,
                    reason=condition.reason,
                    message=condition.message,
                )
                raise DenialError(name, condition.type, condition.reason, condition.message)

            if new_state is RequestState.ISSUED:
                condition = current.latest_condition
                self._emit(
                    name,
                    RequestState.ISSUED,
                    "证书已签发",
                    reason=condition.reason,
                    approved_at=condition.last_update_time,
                )
                return current.certificate

            now = self.clock()
            if new_state is not state:
                if new_state is RequestState.APPROVED_NO_CERT:
                    self._emit(name, new_state, "CSR 已批准，等待证书生成")
                state = new_state
                last_progress = now
            elif self.progress_interval <= 0 or now - last_progress >= self.progress_interval:
                message = "仍在等待审批" if state is RequestState.PENDING else "已批准，仍在等待证书"
                self._emit(name, state, message, waited=round(now - started, 1))
                last_progress = now
