"""
配置加载模块：支持 .env、环境变量、工作目录 config.json（或 REQUEST_CERT_CONFIG_FILE 指定）多来源合并。
公开接口：
- Config: 读取配置的设置类
- JsonConfigSource: JSON 配置文件来源
内部方法：
- Config.settings_customise_sources: 自定义配置来源顺序
- Config.parse_addresses: 将字符串/JSON 解析为 List[str]
"""

from __future__ import annotations

import json
import os
import re
from pathlib import Path
from typing import Annotated, Any, Dict, List, Literal, Tuple

from loguru import logger
from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, PydanticBaseSettingsSource, SettingsConfigDict

ENV_PREFIX = "REQUEST_CERT_"
CONFIG_FILE_ENV = f"{ENV_PREFIX}CONFIG_FILE"


def config_file_path() -> Path:
    explicit = os.environ.get(CONFIG_FILE_ENV)
    return Path(explicit) if explicit else Path.cwd() / "config.json"


class JsonConfigSource(PydanticBaseSettingsSource):
    """JSON 配置文件来源；文件不存在或无法解析时视为空。"""

    def __init__(self, settings_cls: type[BaseSettings]) -> None:
        super().__init__(settings_cls)
        path = config_file_path()
        self.data: Dict[str, Any] = {}
        if not path.is_file():
            return
        try:
            loaded = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"忽略无法读取的配置文件 {path}: {e}")
            return
        if isinstance(loaded, dict):
            self.data = loaded

    def get_field_value(self, field, field_name: str) -> Tuple[Any, str, bool]:
        return self.data.get(field_name), field_name, field_name in self.data

    def __call__(self) -> Dict[str, Any]:
        return dict(self.data)


class Config(BaseSettings):
    # 证书类型与身份
    certificate_type: Literal["node", "client"] | None = None
    addresses: Annotated[List[str], NoDecode] = []
    user: str = ""
    organization: str = "Cockroach"

    # 本地落盘
    certs_dir: str = "cockroach-certs"
    key_size: int = 2048
    symlink_ca_from: str = ""

    # Kubernetes
    kubeconfig: str = ""
    namespace: str = "default"
    secret_name: str = ""
    store_secret: bool = True
    allow_previous_csr: bool = True
    server_signer_name: str = "kubernetes.io/legacy-unknown"
    client_signer_name: str = "kubernetes.io/kube-apiserver-client"

    # 等待审批
    poll_interval_seconds: float = Field(default=1.0, ge=1.0)
    wait_timeout_seconds: float = Field(default=0.0, ge=0.0, description="0 表示一直等待")
    progress_interval_seconds: float = Field(default=30.0, ge=0.0, description="0 表示每次轮询都输出心跳")
    max_poll_errors: int = Field(default=0, ge=0)
    request_timeout_seconds: float = Field(default=30.0, gt=0.0, description="单次 Kubernetes API 调用的超时")

    log_level: str = "INFO"

    # locality 工具
    node_name: str = Field(
        default="",
        validation_alias=AliasChoices("KUBERNETES_NODE", f"{ENV_PREFIX}NODE_NAME"),
    )
    locality_path: str = "/etc/cockroach-locality"
    locality_prefix: str = ""
    error_on_missing_labels: bool = Field(
        default=False,
        validation_alias=AliasChoices("ERROR_ON_MISSING_LABELS", f"{ENV_PREFIX}ERROR_ON_MISSING_LABELS"),
    )

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("addresses", mode="before")
    @classmethod
    def parse_addresses(cls, value: Any) -> List[str]:
        """支持从环境变量以 JSON 或分隔符（逗号/分号/空白）解析 addresses。"""
        if value is None or value == "":
            return []
        if isinstance(value, (list, tuple)):
            return [str(v).strip() for v in value if str(v).strip()]
        if isinstance(value, str):
            text = value.strip()
            # 优先尝试 JSON
            try:
                loaded = json.loads(text)
                if isinstance(loaded, list):
                    return [str(v).strip() for v in loaded if str(v).strip()]
            except ValueError:
                pass
            # 回退为分隔符拆分（, ; 空白）
            return [p for p in re.split(r"[\s,;]+", text) if p]
        return value

    @field_validator("certificate_type", mode="before")
    @classmethod
    def empty_type_is_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        """入参 > 环境变量 > .env > JSON 配置文件 > secrets。"""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            JsonConfigSource(settings_cls),
            file_secret_settings,
        )
