"""
证书申请的核心纯逻辑：由身份构建 CSR 模板、生成 RSA 私钥与 PKCS#10 请求。
不涉及任何网络或磁盘 I/O。
"""

from __future__ import annotations

import ipaddress
from typing import List, Tuple

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID
from loguru import logger

from .errors import KeyGenerationError, KeyMismatchError, RequestEncodingError
from .schemas import CertificateRequestTemplate, ClientIdentity, Identity, NodeIdentity

DEFAULT_ORGANIZATION = "Cockroach"
NODE_COMMON_NAME = "node"
# 本地解析约定：节点证书总是包含 localhost
LOCAL_HOSTNAME = "localhost"


def _is_ip_literal(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
        return True
    except ValueError:
        return False


def split_hosts(hosts: List[str]) -> Tuple[List[str], List[str]]:
    """
    将主机列表划分为 (IP 地址, DNS 名称)，保持原有顺序。
    必须先按 IP 字面量解析，解析失败的才归为 DNS 名称。
    """
    ip_addresses: List[str] = []
    dns_names: List[str] = []
    for host in hosts:
        if not host:
            continue
        if _is_ip_literal(host):
            ip_addresses.append(host)
        else:
            dns_names.append(host)
    return ip_addresses, dns_names


def build_template(identity: Identity, organization: str = DEFAULT_ORGANIZATION) -> CertificateRequestTemplate:
    """
    由身份推导 CSR 模板。
    :param identity: NodeIdentity 或 ClientIdentity。
    :param organization: 证书主题中的组织名。
    :return: CertificateRequestTemplate
    """
    if isinstance(identity, NodeIdentity):
        ip_addresses, dns_names = split_hosts(identity.hosts)
        if LOCAL_HOSTNAME not in dns_names:
            dns_names.append(LOCAL_HOSTNAME)
        return CertificateRequestTemplate(
            organization=organization,
            common_name=NODE_COMMON_NAME,
            ip_addresses=ip_addresses,
            dns_names=dns_names,
        )
    if isinstance(identity, ClientIdentity):
        return CertificateRequestTemplate(organization=organization, common_name=identity.username)
    raise TypeError(f"未知的身份类型: {type(identity).__name__}")


def file_prefix(identity: Identity) -> str:
    """落盘文件名前缀：节点为 node，客户端为 client.<username>。"""
    if isinstance(identity, NodeIdentity):
        return "node"
    if isinstance(identity, ClientIdentity):
        return f"client.{identity.username}"
    raise TypeError(f"未知的身份类型: {type(identity).__name__}")


def wants_server_auth(identity: Identity) -> bool:
    if isinstance(identity, NodeIdentity):
        return True
    if isinstance(identity, ClientIdentity):
        return False
    raise TypeError(f"未知的身份类型: {type(identity).__name__}")


def build_csr_name(prefix: str, hostname: str | None) -> str:
    """CSR 名称是管理员审批时唯一能看到的信息，尽量带上主机名。"""
    if hostname:
        return f"{prefix}-{hostname}"
    return prefix


def generate_private_key(key_bits: int) -> rsa.RSAPrivateKey:
    try:
        return rsa.generate_private_key(public_exponent=65537, key_size=key_bits)
    except (ValueError, UnsupportedAlgorithm) as e:
        raise KeyGenerationError(f"生成 RSA 密钥对失败 (key_size={key_bits}): {e}") from e


def encode_private_key(private_key: rsa.RSAPrivateKey) -> bytes:
    """以 PKCS#1 (RSA PRIVATE KEY) PEM 格式编码私钥。"""
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )


def build_csr(template: CertificateRequestTemplate, private_key: rsa.RSAPrivateKey) -> bytes:
    """
    使用模板与私钥构建并签名 PKCS#10 请求。
    :return: PEM 编码的 CSR。
    :raises RequestEncodingError: 签名或编码失败。
    """
    try:
        builder = x509.CertificateSigningRequestBuilder().subject_name(
            x509.Name(
                [
                    x509.NameAttribute(NameOID.ORGANIZATION_NAME, template.organization),
                    x509.NameAttribute(NameOID.COMMON_NAME, template.common_name),
                ]
            )
        )
        alt_names: List[x509.GeneralName] = [x509.DNSName(name) for name in template.dns_names]
        alt_names.extend(x509.IPAddress(ipaddress.ip_address(ip)) for ip in template.ip_addresses)
        if alt_names:
            builder = builder.add_extension(x509.SubjectAlternativeName(alt_names), critical=False)
        csr = builder.sign(private_key, hashes.SHA256())
        return csr.public_bytes(serialization.Encoding.PEM)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise RequestEncodingError(f"生成 CSR 失败: {e}") from e


def generate(template: CertificateRequestTemplate, key_bits: int) -> Tuple[bytes, bytes]:
    """
    生成新的私钥并据此签名 CSR。
    :param template: CSR 模板。
    :param key_bits: RSA 模长。
    :return: (PEM 私钥, PEM CSR)
    """
    private_key = generate_private_key(key_bits)
    csr_pem = build_csr(template, private_key)
    logger.debug(
        f"已生成 CSR: CN={template.common_name}, dns={template.dns_names}, ip={template.ip_addresses}"
    )
    return encode_private_key(private_key), csr_pem


def verify_key_pair(csr_name: str, cert_pem: bytes, key_pem: bytes) -> None:
    """
    确认签发的证书携带的公钥与私钥对应。
    :raises KeyMismatchError: 证书无法解析，或公钥不一致。
    """
    spki = (serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo)
    try:
        cert = x509.load_pem_x509_certificate(cert_pem)
        key = serialization.load_pem_private_key(key_pem, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise KeyMismatchError(f"无法解析 CSR {csr_name} 签发的证书: {e}") from e
    if cert.public_key().public_bytes(*spki) != key.public_key().public_bytes(*spki):
        raise KeyMismatchError(
            f"CSR {csr_name} 签发的证书与本次生成的私钥不匹配，"
            f"该 CSR 可能来自之前的运行。请删除后重试: kubectl delete csr {csr_name}"
        )
