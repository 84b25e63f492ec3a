"""
测试用的内存替身：CSR API、Secret API 与可控时钟。
"""

import datetime
from typing import Callable, Dict, List

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from src.server.request_cert.errors import AlreadyExistsError, TransportError
from src.server.request_cert.schemas import SigningRequest, SigningRequestCondition


class FakeSigningAPI:
    """内存中的 CSR 存储；on_get 可在每次查询时修改对象，模拟审批者。"""

    def __init__(self) -> None:
        self.objects: Dict[str, SigningRequest] = {}
        self.created: List[SigningRequest] = []
        self.get_calls = 0
        self.on_get: Callable[[SigningRequest, int], SigningRequest] | None = None

    def create(self, request: SigningRequest) -> SigningRequest:
        if request.name in self.objects:
            raise AlreadyExistsError("CertificateSigningRequest", request.name)
        obj = request.model_copy(update={"uid": f"uid-{len(self.created) + 1}"})
        self.objects[request.name] = obj
        self.created.append(obj)
        return obj

    def get(self, name: str) -> SigningRequest:
        self.get_calls += 1
        if name not in self.objects:
            raise TransportError(f"csr {name} not found")
        if self.on_get is not None:
            self.objects[name] = self.on_get(self.objects[name], self.get_calls)
        return self.objects[name]


class FakeSecretAPI:
    def __init__(self) -> None:
        self.data: Dict[str, Dict[str, bytes]] = {}
        self.create_calls = 0

    def create(self, name: str, data: Dict[str, bytes]) -> None:
        self.create_calls += 1
        if name in self.data:
            raise AlreadyExistsError("Secret", name)
        self.data[name] = dict(data)

    def get(self, name: str) -> Dict[str, bytes] | None:
        return self.data.get(name)


class FakeClock:
    """单调时钟替身，wait 直接推进时间而不真正休眠。"""

    def __init__(self) -> None:
        self.now = 0.0
        self.waits: List[float] = []

    def __call__(self) -> float:
        return self.now

    def wait(self, seconds: float) -> bool:
        self.waits.append(seconds)
        self.now += seconds
        return False


def approved(obj: SigningRequest, certificate: bytes | None = None) -> SigningRequest:
    conditions = obj.conditions + [SigningRequestCondition(type="Approved", reason="AutoApproved")]
    return obj.model_copy(update={"conditions": conditions, "certificate": certificate})


def denied(obj: SigningRequest) -> SigningRequest:
    conditions = obj.conditions + [
        SigningRequestCondition(type="Denied", reason="AdminDenied", message="not allowed")
    ]
    return obj.model_copy(update={"conditions": conditions})


_CA_KEY = rsa.generate_private_key(public_exponent=65537, key_size=2048)
_CA_NAME = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "test-ca")])


def sign_request(csr_pem: bytes) -> bytes:
    """用测试 CA 为 CSR 签发证书，证书公钥即 CSR 公钥。"""
    csr = x509.load_pem_x509_csr(csr_pem)
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(csr.subject)
        .issuer_name(_CA_NAME)
        .public_key(csr.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + datetime.timedelta(days=1))
        .sign(_CA_KEY, hashes.SHA256())
    )
    return cert.public_bytes(serialization.Encoding.PEM)


def issued(obj: SigningRequest) -> SigningRequest:
    return approved(obj, sign_request(obj.request))


@pytest.fixture
def signing_api():
    return FakeSigningAPI()


@pytest.fixture
def secret_api():
    return FakeSecretAPI()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def events():
    return []


@pytest.fixture
def approve():
    return approved


@pytest.fixture
def deny():
    return denied


@pytest.fixture
def issue():
    return issued
