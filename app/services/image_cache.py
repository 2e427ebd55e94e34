"""File-backed cache of remote cover and backdrop images."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

import httpx

from ..config import Settings
from ..models import CachedImage
from ..utils import filename_from_url, sanitize_filename

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = frozenset({".jpg", ".jpeg", ".png", ".gif", ".webp"})
MIME_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
}
USER_AGENT = "BackLogus/1.0.0 (Image Cache Service)"


@dataclass(slots=True)
class CacheStats:
    total_images: int
    total_size: int

    def to_payload(self) -> dict[str, object]:
        return {
            "totalImages": self.total_images,
            "totalSize": self.total_size,
            "totalSizeMB": f"{self.total_size / 1024 / 1024:.2f}",
        }


class ImageCacheService:
    """Download, list and restore cached images on local disk."""

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        *,
        cache_dir: Path | None = None,
    ) -> None:
        self._client = http_client
        self._cache_dir = Path(cache_dir or settings.image_cache_dir)
        self._retries = settings.image_download_retries
        self._timeout = httpx.Timeout(settings.image_download_timeout_seconds)
        self._semaphore = asyncio.Semaphore(settings.image_download_concurrency)
        self._backoff_base = 1.0

    @property
    def cache_dir(self) -> Path:
        return self._cache_dir

    def ensure_cache_dir(self) -> None:
        self._cache_dir.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def filename_for_url(url: str | None) -> str | None:
        return filename_from_url(url)

    def local_path(self, filename: str) -> Path | None:
        """Return the on-disk path for ``filename`` if it names a cache entry."""

        safe = sanitize_filename(filename)
        if safe is None or safe != filename:
            return None
        return self._cache_dir / safe

    async def cache(self, url: str | None) -> str | None:
        """Download ``url`` into the cache and return its local filename."""

        filename = self.filename_for_url(url)
        if filename is None or url is None:
            return None
        path = self._cache_dir / filename
        if path.exists():
            return filename

        async with self._semaphore:
            for attempt in range(self._retries + 1):
                try:
                    response = await self._client.get(
                        url,
                        timeout=self._timeout,
                        headers={"User-Agent": USER_AGENT},
                        follow_redirects=True,
                    )
                    response.raise_for_status()
                except httpx.HTTPError as exc:
                    if attempt >= self._retries:
                        logger.warning(
                            "Failed to cache image after %s attempts: %s (%s)",
                            attempt + 1,
                            url,
                            exc,
                        )
                        return None
                    delay = self._backoff_base * (2**attempt) + random.random()
                    await asyncio.sleep(delay)
                    continue

                await asyncio.to_thread(self._write_file, path, response.content)
                return filename
        return None

    async def get_all(self) -> list[CachedImage]:
        """Return every cached image file with its bytes."""

        return await asyncio.to_thread(self._read_all)

    async def restore(self, images: Iterable[CachedImage]) -> int:
        """Write archived images into the cache, replacing same-named files."""

        return await asyncio.to_thread(self._write_all, list(images))

    async def stats(self) -> CacheStats:
        return await asyncio.to_thread(self._collect_stats)

    def _image_paths(self) -> list[Path]:
        if not self._cache_dir.is_dir():
            return []
        return sorted(
            path
            for path in self._cache_dir.iterdir()
            if path.is_file() and path.suffix.lower() in IMAGE_EXTENSIONS
        )

    def _read_all(self) -> list[CachedImage]:
        return [
            CachedImage(filename=path.name, data=path.read_bytes())
            for path in self._image_paths()
        ]

    def _write_all(self, images: list[CachedImage]) -> int:
        self.ensure_cache_dir()
        written = 0
        for image in images:
            filename = sanitize_filename(image.filename)
            if filename is None:
                logger.warning("Skipping image with unusable name %r", image.filename)
                continue
            self._write_file(self._cache_dir / filename, image.data)
            written += 1
        logger.info("Restored %s cached images", written)
        return written

    def _write_file(self, path: Path, data: bytes) -> None:
        self.ensure_cache_dir()
        temporary = path.with_name(f".{path.name}.tmp")
        temporary.write_bytes(data)
        temporary.replace(path)

    def _collect_stats(self) -> CacheStats:
        paths = self._image_paths()
        return CacheStats(
            total_images=len(paths),
            total_size=sum(path.stat().st_size for path in paths),
        )

    @staticmethod
    def mime_type(filename: str) -> str:
        return MIME_TYPES.get(Path(filename).suffix.lower(), "image/jpeg")
