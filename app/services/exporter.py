"""Read-only snapshot of a user's profile, credentials and library."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Collection

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from ..db_models import ApiCredential, User
from ..errors import NotFound
from ..media_kinds import MEDIA_KINDS, MediaKind
from ..models import ARCHIVE_VERSION, ArchiveManifest, CachedImage, ExportBundle, LibraryPair
from ..utils import camelize, filename_from_url, to_json_safe
from .image_cache import ImageCacheService

logger = logging.getLogger(__name__)

# The password hash never leaves the database.
PROFILE_EXCLUDED_FIELDS = frozenset({"password_hash"})


def row_to_document(row: Any, *, exclude: Collection[str] = ()) -> dict[str, Any]:
    """Serialise every mapped column of ``row`` under camelCase keys."""

    document: dict[str, Any] = {}
    for column in row.__table__.columns:
        if column.key in exclude:
            continue
        document[camelize(column.key)] = to_json_safe(
            getattr(row, column.key), field=f"{row.__tablename__}.{column.key}"
        )
    return document


class BackupExporter:
    """Collects everything a backup archive needs for one user."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        image_cache: ImageCacheService,
        *,
        scope_images_to_library: bool = False,
    ) -> None:
        self._session_factory = session_factory
        self._image_cache = image_cache
        self._scope_images = scope_images_to_library

    async def export_user(self, user_id: int) -> ExportBundle:
        profile, credentials = await self._load_profile(user_id)

        *library_batches, images = await asyncio.gather(
            *(self._load_library(kind, user_id) for kind in MEDIA_KINDS),
            self._image_cache.get_all(),
        )
        library = {
            kind.key: pairs for kind, pairs in zip(MEDIA_KINDS, library_batches)
        }
        if self._scope_images:
            images = self._filter_images(images, library)

        counts: dict[str, int] = {}
        for kind in MEDIA_KINDS:
            pairs = library[kind.key]
            counts[kind.catalog_total_key] = len(
                {pair.catalog_item.get("id") for pair in pairs}
            )
            counts[kind.entries_total_key] = len(pairs)
        counts["apiCredentials"] = len(credentials)
        counts["images"] = len(images)

        manifest = ArchiveManifest(
            export_date=datetime.utcnow(),
            version=ARCHIVE_VERSION,
            user_id=user_id,
            counts=counts,
        )
        logger.info(
            "Exported user %s: %s",
            user_id,
            ", ".join(f"{key}={value}" for key, value in counts.items()),
        )
        return ExportBundle(
            manifest=manifest,
            profile=profile,
            api_credentials=credentials,
            library=library,
            images=images,
        )

    async def _load_profile(
        self, user_id: int
    ) -> tuple[dict[str, Any], list[dict[str, Any]]]:
        async with self._session_factory() as session:
            user = await session.get(
                User, user_id, options=[selectinload(User.api_credentials)]
            )
            if user is None:
                raise NotFound(f"User {user_id} not found")
            profile = row_to_document(user, exclude=PROFILE_EXCLUDED_FIELDS)
            credentials = [
                row_to_document(credential)
                for credential in sorted(user.api_credentials, key=_by_id)
            ]
        return profile, credentials

    async def _load_library(self, kind: MediaKind, user_id: int) -> list[LibraryPair]:
        entry_model = kind.entry_model
        stmt = (
            select(entry_model)
            .where(entry_model.user_id == user_id)
            .options(selectinload(getattr(entry_model, kind.relationship_name)))
            .order_by(entry_model.id)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            entries = result.scalars().all()
            return [
                LibraryPair(
                    entry=row_to_document(entry),
                    catalog_item=row_to_document(
                        getattr(entry, kind.relationship_name)
                    ),
                )
                for entry in entries
            ]

    @staticmethod
    def _filter_images(
        images: list[CachedImage], library: dict[str, list[LibraryPair]]
    ) -> list[CachedImage]:
        wanted: set[str] = set()
        for kind in MEDIA_KINDS:
            for pair in library[kind.key]:
                urls: list[Any] = [
                    pair.catalog_item.get(camelize(name)) for name in kind.image_url_fields
                ]
                for name in kind.image_list_fields:
                    urls.extend(pair.catalog_item.get(camelize(name)) or [])
                for url in urls:
                    filename = filename_from_url(url) if isinstance(url, str) else None
                    if filename:
                        wanted.add(filename)
        return [image for image in images if image.filename in wanted]


def _by_id(row: ApiCredential) -> int:
    return row.id
