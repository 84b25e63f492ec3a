"""
将证书、私钥与可选的 CA 软链接写入本地证书目录。
"""

from __future__ import annotations

import os
from pathlib import Path

from loguru import logger

from .errors import FilePersistenceError
from .schemas import PersistedFiles

KEY_FILE_MODE = 0o400
CERT_FILE_MODE = 0o644
DIR_MODE = 0o755
CA_LINK_NAME = "ca.crt"


def _write_file(path: Path, contents: bytes, mode: int) -> None:
    # 只读的旧文件无法被覆盖写入，先删除再创建
    path.unlink(missing_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, mode)
    with os.fdopen(fd, "wb") as f:
        f.write(contents)
    # 不受 umask 影响
    os.chmod(path, mode)


def persist(
    directory: str | Path,
    file_prefix: str,
    cert: bytes,
    key: bytes,
    ca_source: str | None = None,
) -> PersistedFiles:
    """
    写入 <prefix>.key (0400)、<prefix>.crt (0644)，并按需创建 <directory>/ca.crt 软链接。
    :param directory: 证书目录，不存在时创建。
    :param file_prefix: 文件名前缀，如 node 或 client.root。
    :param ca_source: CA 证书路径；非空时创建指向它的软链接。
    :raises FilePersistenceError: 任何 I/O 失败。
    """
    certs_dir = Path(directory)
    try:
        certs_dir.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
    except OSError as e:
        raise FilePersistenceError(f"无法创建目录 {certs_dir}: {e}") from e

    key_path = certs_dir / f"{file_prefix}.key"
    try:
        _write_file(key_path, key, KEY_FILE_MODE)
    except OSError as e:
        raise FilePersistenceError(f"无法写入私钥文件 {key_path}: {e}") from e
    logger.info(f"已写入私钥文件: {key_path}")

    cert_path = certs_dir / f"{file_prefix}.crt"
    try:
        _write_file(cert_path, cert, CERT_FILE_MODE)
    except OSError as e:
        raise FilePersistenceError(f"无法写入证书文件 {cert_path}: {e}") from e
    logger.info(f"已写入证书文件: {cert_path}")

    ca_path = None
    if ca_source:
        link_path = certs_dir / CA_LINK_NAME
        try:
            link_path.unlink(missing_ok=True)
            os.symlink(ca_source, link_path)
        except OSError as e:
            raise FilePersistenceError(f"无法创建软链接 {link_path} -> {ca_source}: {e}") from e
        logger.info(f"已创建 CA 证书软链接: {link_path} -> {ca_source}")
        ca_path = str(link_path)

    return PersistedFiles(key_path=str(key_path), cert_path=str(cert_path), ca_path=ca_path)
