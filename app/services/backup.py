"""High level orchestration for backup export and import."""

from __future__ import annotations

import asyncio
import logging
from datetime import date
from typing import IO

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings
from ..models import ArchiveManifest, ImportResult
from ..utils import slugify
from .archive import write_archive
from .exporter import BackupExporter
from .image_cache import ImageCacheService
from .importer import BackupImporter

logger = logging.getLogger(__name__)


class BackupService:
    """Coordinates the exporter, the archive codec and the importer."""

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        image_cache: ImageCacheService,
    ):
        self._settings = settings
        self._exporter = BackupExporter(
            session_factory,
            image_cache,
            scope_images_to_library=settings.backup_scope_images_to_library,
        )
        self._importer = BackupImporter(settings, session_factory, image_cache)

    def backup_filename(self, today: date | None = None) -> str:
        stamp = (today or date.today()).isoformat()
        return f"{slugify(self._settings.app_name)}-backup-{stamp}.zip"

    async def create_backup(self, user_id: int, fileobj: IO[bytes]) -> ArchiveManifest:
        """Export ``user_id`` and stream the archive into ``fileobj``."""

        bundle = await self._exporter.export_user(user_id)
        await asyncio.to_thread(
            write_archive, bundle, fileobj, product=self._settings.app_name
        )
        return bundle.manifest

    async def import_backup(self, user_id: int, source: bytes | IO[bytes]) -> ImportResult:
        """Restore ``source`` into ``user_id``'s account."""

        logger.info("Starting backup import for user %s", user_id)
        return await self._importer.import_archive(user_id, source)
