"""
Attachment downloader.

Saves remote attachments under ``<attachments_dir>/<source_id>/`` so work
items can reference local copies. A failed download is recorded on the
attachment instead of failing the item.
"""

import asyncio
import hashlib
import logging
import re
from pathlib import Path, PurePosixPath
from urllib.parse import urlparse

import httpx

from src.config.settings import get_settings
from src.ingestion.schemas import Attachment

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
RETRY_DELAY_SECONDS = 2.0
DOWNLOAD_TIMEOUT_SECONDS = 30.0

_CONTENT_TYPE_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
    "image/svg+xml": ".svg",
    "application/pdf": ".pdf",
}


def sanitize_filename(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9._-]", "_", name)[:100]


def extension_for(content_type: str) -> str | None:
    for prefix, ext in _CONTENT_TYPE_EXTENSIONS.items():
        if content_type.startswith(prefix):
            return ext
    return None


class AttachmentDownloader:
    """
    Downloads attachments with retries.

    Usage:
        downloader = AttachmentDownloader()
        saved = await downloader.download("slack-main", item.attachments, headers)
    """

    def __init__(
        self,
        base_dir: Path | None = None,
        max_retries: int = MAX_RETRIES,
        retry_delay: float = RETRY_DELAY_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._base_dir = base_dir or get_settings().attachments_dir
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._transport = transport

    async def download(
        self,
        source_id: str,
        attachments: list[Attachment],
        headers: dict[str, str] | None = None,
    ) -> list[Attachment]:
        """
        Download every attachment that is not already local.

        Returns:
            New Attachment objects with ``local_path`` or ``error`` set
        """
        if not attachments:
            return []

        target_dir = self._base_dir / source_id
        target_dir.mkdir(parents=True, exist_ok=True)

        results: list[Attachment] = []
        async with httpx.AsyncClient(
            timeout=DOWNLOAD_TIMEOUT_SECONDS,
            follow_redirects=True,
            transport=self._transport,
        ) as client:
            for att in attachments:
                if att.local_path or not att.url:
                    results.append(att)
                    continue
                path, error = await self._download_with_retry(
                    client, att, target_dir, headers or {}, source_id
                )
                results.append(att.model_copy(update={"local_path": path, "error": error}))
        return results

    async def _download_with_retry(
        self,
        client: httpx.AsyncClient,
        att: Attachment,
        target_dir: Path,
        headers: dict[str, str],
        source_id: str,
    ) -> tuple[str | None, str | None]:
        for attempt in range(1, self._max_retries + 1):
            try:
                path = await self._download_file(client, att, target_dir, headers)
                logger.info(f"[{source_id}] downloaded {path.name} ({path.stat().st_size} bytes)")
                return str(path), None
            except (httpx.HTTPError, OSError, ValueError) as e:
                if attempt < self._max_retries:
                    logger.warning(
                        f"[{source_id}] download retry {attempt}/{self._max_retries} "
                        f"for {att.url}: {e}"
                    )
                    await asyncio.sleep(self._retry_delay * attempt)
                else:
                    logger.error(
                        f"[{source_id}] download failed after {self._max_retries} "
                        f"attempts: {att.url}: {e}"
                    )
        return None, f"[DOWNLOAD_FAILED: {att.url}]"

    async def _download_file(
        self,
        client: httpx.AsyncClient,
        att: Attachment,
        target_dir: Path,
        headers: dict[str, str],
    ) -> Path:
        response = await client.get(att.url, headers=headers or None)
        response.raise_for_status()

        content = response.content
        if not content:
            raise ValueError(f"empty response for {att.url}")

        url_path = PurePosixPath(urlparse(att.url).path)
        filename = sanitize_filename(att.filename or url_path.name)
        if not filename or filename in ("_", "download"):
            digest = hashlib.md5(att.url.encode("utf-8")).hexdigest()[:12]
            ext = (
                extension_for(response.headers.get("content-type", ""))
                or url_path.suffix
                or ".bin"
            )
            filename = f"{digest}{ext}"

        path = target_dir / filename
        path.write_bytes(content)
        return path
