"""
文件功能：
    定义证书申请流程的数据模型（Pydantic）。

公开接口：
    - NodeIdentity / ClientIdentity / Identity: 申请者身份（带 kind 标签的联合类型）
    - CertificateRequestTemplate: 由身份推导出的 CSR 模板
    - SigningRequestCondition / SigningRequest: Kubernetes 中 CSR 对象的本地表示
    - SubmittedRequest: submit 返回的句柄
    - CertificateBundle: 证书与私钥（Secret 缓存的内容）
    - RequestState / ProgressEvent: 状态机的状态与进度事件
    - PersistedFiles / ProvisionResult: 落盘与整体流程结果

内部方法：
    无
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class NodeIdentity(BaseModel):
    """节点身份：证书同时用于服务端与客户端认证。"""

    model_config = ConfigDict(frozen=True)

    kind: Literal["node"] = "node"
    hosts: List[str] = Field(min_length=1, description="DNS 名称或 IP 地址，保持输入顺序")

    @field_validator("hosts")
    @classmethod
    def reject_scoped_addresses(cls, hosts: List[str]) -> List[str]:
        # 证书的 IP SAN 无法表示 IPv6 zone（如 fe80::1%eth0）
        for host in hosts:
            if "%" in host:
                raise ValueError(f"不支持带 zone 的地址: {host}")
        return hosts


class ClientIdentity(BaseModel):
    """客户端身份：证书仅用于客户端认证。"""

    model_config = ConfigDict(frozen=True)

    kind: Literal["client"] = "client"
    username: str = Field(min_length=1)


Identity = Annotated[Union[NodeIdentity, ClientIdentity], Field(discriminator="kind")]


class CertificateRequestTemplate(BaseModel):
    model_config = ConfigDict(frozen=True)

    organization: str
    common_name: str
    ip_addresses: List[str] = Field(default_factory=list)
    dns_names: List[str] = Field(default_factory=list)


class SigningRequestCondition(BaseModel):
    type: str
    reason: str = ""
    message: str = ""
    last_update_time: datetime | None = None


class SigningRequest(BaseModel):
    """Kubernetes CertificateSigningRequest 的精简表示。

    conditions 只追加，以最后一条为准；certificate 可能在 Approved 之后才出现。
    """

    name: str
    request: bytes
    usages: List[str] = Field(default_factory=list)
    signer_name: str | None = None
    uid: str | None = None
    conditions: List[SigningRequestCondition] = Field(default_factory=list)
    certificate: bytes | None = None

    @property
    def latest_condition(self) -> SigningRequestCondition | None:
        return self.conditions[-1] if self.conditions else None


class SubmittedRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    uid: str | None = None
    reused: bool = False


class CertificateBundle(BaseModel):
    model_config = ConfigDict(frozen=True)

    cert: bytes
    key: bytes


class RequestState(str, Enum):
    SUBMITTED = "submitted"
    PENDING = "pending"
    APPROVED_NO_CERT = "approved_no_cert"
    ISSUED = "issued"
    DENIED = "denied"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class ProgressEvent(BaseModel):
    """状态机在状态变化、心跳和异常情况下发出的结构化事件。"""

    name: str
    state: RequestState
    message: str
    level: Literal["debug", "info", "warning", "error"] = "info"
    fields: Dict[str, Any] = Field(default_factory=dict)


class PersistedFiles(BaseModel):
    key_path: str
    cert_path: str
    ca_path: str | None = None


class ProvisionResult(BaseModel):
    source: Literal["cache", "issued"]
    csr_name: str
    secret_name: str | None = None
    files: PersistedFiles
