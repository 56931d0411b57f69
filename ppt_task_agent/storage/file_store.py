"""
文件存储与结果镜像。

- FileStorage: 本地目录存储，返回可访问的公开 URL
- validate_file_buffer / sanitize_filename: 上传与下载文件的校验
- ResultMirror: 把引擎生成的 PPTX / PDF 下载后转存到 FileStorage，失败返回 None
"""

from __future__ import annotations

import asyncio
import re
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import httpx

from ..config import settings
from ..logging_config import get_logger

logger = get_logger(__name__)

PPTX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.presentationml.presentation"

ALLOWED_UPLOAD_TYPES: dict[str, str] = {
    "application/pdf": ".pdf",
    "application/msword": ".doc",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": ".docx",
    "text/plain": ".txt",
    "text/markdown": ".md",
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/gif": ".gif",
    "image/webp": ".webp",
    PPTX_CONTENT_TYPE: ".pptx",
}

_UNSAFE_FILENAME_RE = re.compile(r"[^a-zA-Z0-9\u4e00-\u9fa5_.-]")
_UNSAFE_TITLE_RE = re.compile(r"[^a-zA-Z0-9\u4e00-\u9fa5]")


class FileValidationError(ValueError):
    pass


def sanitize_filename(filename: str, max_length: int = 50) -> str:
    return _UNSAFE_FILENAME_RE.sub("_", filename)[:max_length]


def validate_file_buffer(data: bytes, filename: str, max_size_mb: Optional[int] = None) -> None:
    """校验大小与魔数，不通过时抛出 FileValidationError。"""
    limit_mb = max_size_mb if max_size_mb is not None else settings.max_upload_size_mb
    size_mb = len(data) / (1024 * 1024)
    if size_mb > limit_mb:
        raise FileValidationError(f"文件太大（{size_mb:.1f}MB），最大支持{limit_mb}MB")

    lowered = filename.lower()
    # PPTX 是 ZIP 包
    if lowered.endswith(".pptx") and not data.startswith(b"PK\x03\x04"):
        raise FileValidationError("文件不是有效的 PPTX（魔数不匹配）")
    if lowered.endswith(".pdf") and not data.startswith(b"%PDF"):
        raise FileValidationError("文件不是有效的 PDF")


@dataclass(frozen=True)
class StoredFile:
    key: str
    url: str


class FileStorage:
    """本地文件存储。"""

    def __init__(self, root: Optional[Path] = None, public_base_url: Optional[str] = None):
        self.root = Path(root).resolve() if root is not None else settings.file_storage_path
        self.public_base_url = (public_base_url or settings.file_public_base_url).rstrip("/")
        self.root.mkdir(parents=True, exist_ok=True)

    def _path_for(self, key: str) -> Path:
        path = (self.root / key.lstrip("/")).resolve()
        if self.root not in path.parents:
            raise FileValidationError(f"非法的存储路径: {key!r}")
        return path

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> StoredFile:
        path = self._path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        relative = path.relative_to(self.root).as_posix()
        logger.info("file_stored", key=relative, size=len(data), content_type=content_type)
        return StoredFile(key=relative, url=f"{self.public_base_url}/{relative}")

    def store_upload(self, user_id: int, file_name: str, data: bytes, content_type: str) -> StoredFile:
        key = f"uploads/{user_id}/{uuid.uuid4().hex[:12]}-{sanitize_filename(file_name)}"
        return self.put(key, data, content_type)


async def download_with_retry(
    url: str,
    *,
    timeout_s: Optional[float] = None,
    max_retries: Optional[int] = None,
    base_sleep_s: float = 1.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Optional[bytes]:
    """下载文件，失败按 1s / 2s / 4s 退避重试，全部失败返回 None。"""
    timeout_s = timeout_s if timeout_s is not None else settings.result_download_timeout_seconds
    attempts = max(1, max_retries if max_retries is not None else settings.result_download_max_retries)

    for attempt in range(1, attempts + 1):
        try:
            async with httpx.AsyncClient(
                timeout=timeout_s, transport=transport, follow_redirects=True
            ) as client:
                response = await client.get(url)
                response.raise_for_status()
                logger.info(
                    "result_downloaded",
                    attempt=attempt,
                    size_mb=round(len(response.content) / 1024 / 1024, 2),
                )
                return response.content
        except httpx.HTTPError as e:
            logger.warning(
                "result_download_failed",
                attempt=attempt,
                max_retries=attempts,
                error=f"{type(e).__name__}: {str(e)[:120]}",
            )
            if attempt < attempts:
                await asyncio.sleep(base_sleep_s * (2 ** (attempt - 1)))
    return None


class ResultMirror:
    """把引擎结果文件转存到本地存储。"""

    def __init__(
        self,
        storage: Optional[FileStorage] = None,
        *,
        base_sleep_s: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.storage = storage or get_file_storage()
        self.base_sleep_s = base_sleep_s
        self._transport = transport

    async def mirror(
        self,
        url: str,
        *,
        user_id: int,
        task_id: int,
        title: str,
        extension: str,
    ) -> Optional[str]:
        """返回转存后的 URL；下载、校验或写入失败时返回 None，由调用方回退到引擎 URL。"""
        data = await download_with_retry(
            url, base_sleep_s=self.base_sleep_s, transport=self._transport
        )
        if data is None:
            return None

        filename = f"result.{extension}"
        try:
            validate_file_buffer(data, filename)
        except FileValidationError as e:
            logger.warning("result_validation_failed", task_id=task_id, error=str(e))
            return None

        safe_title = _UNSAFE_TITLE_RE.sub("_", title)[:50]
        key = f"results/{user_id}/{task_id}/{safe_title}_{int(time.time() * 1000)}.{extension}"
        content_type = PPTX_CONTENT_TYPE if extension == "pptx" else "application/pdf"
        try:
            stored = await asyncio.to_thread(self.storage.put, key, data, content_type)
        except OSError as e:
            logger.error("result_store_failed", task_id=task_id, error=str(e))
            return None
        return stored.url


_file_storage: Optional[FileStorage] = None


def get_file_storage() -> FileStorage:
    global _file_storage
    if _file_storage is None:
        _file_storage = FileStorage()
    return _file_storage
