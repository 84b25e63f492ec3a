"""
证书申请流程的异常定义。

所有致命错误都派生自 RequestCertError，由 run.py 统一捕获并以非零状态退出。
"""


class RequestCertError(RuntimeError):
    """证书申请流程中所有错误的基类。"""


class ConfigError(RequestCertError):
    """配置无效，或无法连接/认证到 Kubernetes API。"""


class KeyGenerationError(RequestCertError):
    """生成私钥失败。"""


class RequestEncodingError(RequestCertError):
    """CSR 签名或编码失败。"""


class SubmissionError(RequestCertError):
    """提交 CSR 被拒绝（重名以外的原因）。"""


class AlreadyExistsError(RequestCertError):
    """同名对象已存在（CSR 或 Secret）。"""

    def __init__(self, kind: str, name: str) -> None:
        super().__init__(f"{kind} {name} 已存在")
        self.kind = kind
        self.name = name


class DenialError(RequestCertError):
    """CSR 被明确拒绝，不会自动重试。"""

    def __init__(self, name: str, condition_type: str, reason: str = "", message: str = "") -> None:
        super().__init__(f"CSR {name} 未被批准: type={condition_type}, reason={reason}, message={message}")
        self.name = name
        self.condition_type = condition_type
        self.reason = reason
        self.message = message


class PendingTimeoutError(RequestCertError):
    """等待批准/签发超时。"""


class RequestCancelledError(RequestCertError):
    """等待过程被外部取消。"""


class TransportError(RequestCertError):
    """访问 Kubernetes API 失败。"""


class CorruptEntryError(RequestCertError):
    """Secret 中只存在 cert/key 其中之一。"""


class FilePersistenceError(RequestCertError):
    """写入证书、私钥或 CA 软链接失败。"""


class KeyMismatchError(RequestCertError):
    """签发的证书与本地生成的私钥不匹配（通常是复用了旧的同名 CSR）。"""
