"""
读取当前 Kubernetes 节点的 region/zone 标签，并写入 locality 文件。

写出的文件（均为 0644）：
- <path>/region
- <path>/zone
- <path>/locality: --locality=region=<region>,az=<zone>
"""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Protocol

from kubernetes import client
from kubernetes.client.rest import ApiException
from loguru import logger
from pydantic import BaseModel

from src.server.request_cert.kube import CONNECTION_ERRORS

REGION_LABELS = [
    "topology.kubernetes.io/region",
    "failure-domain.beta.kubernetes.io/region",
]
ZONE_LABELS = [
    "topology.kubernetes.io/zone",
    "failure-domain.beta.kubernetes.io/zone",
]
LOCALITY_FILE_MODE = 0o644


class LocalityError(RuntimeError):
    pass


class LocalityInfo(BaseModel):
    region: str
    zone: str


class NodeAPI(Protocol):
    def get_labels(self, node_name: str) -> Dict[str, str]:
        ...


class KubeNodeAPI:
    def __init__(self, api_client: client.ApiClient, request_timeout: float | None = None) -> None:
        self._api = client.CoreV1Api(api_client)
        self.request_timeout = request_timeout

    def get_labels(self, node_name: str) -> Dict[str, str]:
        try:
            node = self._api.read_node(node_name, _request_timeout=self.request_timeout)
        except ApiException as e:
            raise LocalityError(f"获取节点 {node_name} 失败: {e.status} {e.reason}") from e
        except CONNECTION_ERRORS as e:
            raise LocalityError(f"获取节点 {node_name} 失败: {e}") from e
        return dict(node.metadata.labels or {})


def first_label_value(labels: Dict[str, str], keys: List[str]) -> str | None:
    """按顺序返回第一个存在且非空的标签值。"""
    for key in keys:
        value = labels.get(key)
        if value:
            return value
    return None


class LocalityChecker:
    """
    :param api: 节点标签查询接口。
    :param node_name: 容器所在的 Kubernetes 节点名。
    :param write_path: 写入 locality 文件的目录。
    :param error_on_missing_labels: 缺少 region/zone 标签时是否报错；否则静默跳过。
    :param prefix: 追加在 region/zone 之前的前缀，例如云厂商名称。
    """

    def __init__(
        self,
        api: NodeAPI,
        node_name: str,
        write_path: str | Path,
        error_on_missing_labels: bool = False,
        prefix: str = "",
    ) -> None:
        self.api = api
        self.node_name = node_name
        self.write_path = Path(write_path)
        self.error_on_missing_labels = error_on_missing_labels
        self.prefix = prefix

    def get_locality_info(self) -> LocalityInfo | None:
        labels = self.api.get_labels(self.node_name)
        region = first_label_value(labels, REGION_LABELS)
        if region is None:
            if not self.error_on_missing_labels:
                return None
            raise LocalityError(f"节点 {self.node_name} 没有 region 标签")
        zone = first_label_value(labels, ZONE_LABELS)
        if zone is None:
            if not self.error_on_missing_labels:
                return None
            raise LocalityError(f"节点 {self.node_name} 没有 zone 标签")
        return LocalityInfo(region=self.prefix + region, zone=self.prefix + zone)

    def _write_file(self, name: str, value: str) -> None:
        path = self.write_path / name
        try:
            path.write_text(value, encoding="utf-8")
            path.chmod(LOCALITY_FILE_MODE)
        except OSError as e:
            raise LocalityError(f"写入 {path} 失败: {e}") from e

    def write_locality(self) -> LocalityInfo | None:
        """
        查询节点标签并写入 region、zone、locality 三个文件。
        :return: 写入的 LocalityInfo；标签缺失且未要求报错时返回 None，不写任何文件。
        """
        info = self.get_locality_info()
        if info is None:
            logger.warning(f"节点 {self.node_name} 缺少 region/zone 标签，跳过写入 locality")
            return None
        self._write_file("region", info.region)
        self._write_file("zone", info.zone)
        self._write_file("locality", f"--locality=region={info.region},az={info.zone}")
        logger.info(f"已写入 locality 信息到 {self.write_path}: region={info.region}, zone={info.zone}")
        return info
