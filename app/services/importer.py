"""Transactional restore of a decoded backup archive into one account."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import IO, Any, Collection, Mapping

from pydantic import ValidationError
from sqlalchemy import JSON, Boolean, DateTime, Float, Integer, String, Text, delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings
from ..db_models import ApiCredential, User
from ..errors import (
    ArchiveValidationError,
    BackupError,
    ImageRestoreWarning,
    ImportFailed,
    NotFound,
)
from ..media_kinds import MEDIA_KINDS, MediaKind
from ..models import (
    ArchiveManifest,
    CachedImage,
    DecodedArchive,
    ImportResult,
    ImportSummary,
    MediaStatus,
    QuickReview,
)
from ..utils import camelize, parse_datetime
from .archive import read_archive
from .image_cache import ImageCacheService

logger = logging.getLogger(__name__)

SUPPORTED_MAJOR_VERSION = 1

# Only these profile fields are restored; email and password stay untouched.
RESTORABLE_PROFILE_FIELDS = frozenset(
    {"first_name", "last_name", "avatar_url", "timezone", "theme_preference"}
)
CREDENTIAL_EXCLUDED_FIELDS = frozenset({"id", "user_id"})
CATALOG_EXCLUDED_FIELDS = frozenset({"id"})
ENTRY_EXCLUDED_FIELDS = frozenset({"id", "user_id"})


@dataclass(slots=True)
class CatalogRow:
    old_id: str | None
    provider_id: int
    values: dict[str, Any]


@dataclass(slots=True)
class EntryRow:
    old_catalog_id: str | None
    values: dict[str, Any]


@dataclass
class RestorePlan:
    """Validated, column-typed contents of an archive."""

    manifest: ArchiveManifest
    profile: dict[str, Any] | None
    credentials: list[dict[str, Any]]
    catalog: dict[str, list[CatalogRow]]
    entries: dict[str, list[EntryRow]]
    images: list[CachedImage] = field(default_factory=list)

    @property
    def item_count(self) -> int:
        return (
            len(self.credentials)
            + sum(len(rows) for rows in self.catalog.values())
            + sum(len(rows) for rows in self.entries.values())
        )


def _id_key(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def document_to_columns(
    model: type,
    document: Mapping[str, Any],
    *,
    exclude: Collection[str] = (),
    only: Collection[str] | None = None,
) -> dict[str, Any]:
    """Map an archived row onto ``model``'s columns, coercing each value."""

    values: dict[str, Any] = {}
    for column in model.__table__.columns:
        if column.key in exclude or (only is not None and column.key not in only):
            continue
        camel_key = camelize(column.key)
        raw = document.get(camel_key, document.get(column.key))
        if raw is None and _is_required(column):
            raise ArchiveValidationError(
                f"Archived {model.__tablename__} row is missing {camel_key}"
            )
        if camel_key not in document and column.key not in document:
            continue
        try:
            values[column.key] = _coerce_column_value(column.type, raw)
        except (TypeError, ValueError) as exc:
            raise ArchiveValidationError(
                f"Invalid value for {model.__tablename__}.{camel_key}: {raw!r}"
            ) from exc
    return values


def _is_required(column: Any) -> bool:
    return (
        not column.nullable
        and not column.primary_key
        and column.default is None
        and column.server_default is None
    )


def _coerce_column_value(column_type: Any, raw: Any) -> Any:
    if raw is None:
        return None
    if isinstance(column_type, DateTime):
        return parse_datetime(raw)
    if isinstance(column_type, Boolean):
        if isinstance(raw, bool):
            return raw
        if isinstance(raw, (int, float)):
            return bool(raw)
        if isinstance(raw, str) and raw.lower() in {"true", "false", "1", "0"}:
            return raw.lower() in {"true", "1"}
        raise ValueError("expected a boolean")
    if isinstance(column_type, Integer):
        if isinstance(raw, bool):
            raise ValueError("expected an integer")
        if isinstance(raw, float) and not raw.is_integer():
            raise ValueError("expected an integer")
        return int(raw)
    if isinstance(column_type, Float):
        if isinstance(raw, bool):
            raise ValueError("expected a number")
        return float(raw)
    if isinstance(column_type, JSON):
        return raw
    if isinstance(column_type, (String, Text)):
        if isinstance(raw, (dict, list)):
            raise ValueError("expected a string")
        return str(raw)
    return raw


def _section(container: Mapping[str, Any], key: str, *, where: str) -> dict[str, Any]:
    value = container.get(key)
    if not isinstance(value, dict):
        raise ArchiveValidationError(f"Backup is missing the {where}.{key} section")
    return value


def _rows(section: Mapping[str, Any], key: str, *, where: str) -> list[dict[str, Any]]:
    value = section.get(key) or []
    if not isinstance(value, list) or not all(isinstance(row, dict) for row in value):
        raise ArchiveValidationError(f"{where}.{key} must be a list of objects")
    return value


def build_restore_plan(decoded: DecodedArchive) -> RestorePlan:
    """Validate a decoded archive and coerce every row before any mutation."""

    try:
        manifest = ArchiveManifest.from_document(decoded.db_dump.get("metadata") or {})
        major = manifest.major_version
    except (ValidationError, ValueError) as exc:
        raise ArchiveValidationError(f"Invalid backup metadata: {exc}") from exc
    if major > SUPPORTED_MAJOR_VERSION:
        raise ArchiveValidationError(
            f"Backup version {manifest.version} is newer than this server supports"
        )

    user_data = decoded.user_data
    profile_doc = user_data.get("profile")
    profile = None
    if isinstance(profile_doc, dict):
        profile = document_to_columns(User, profile_doc, only=RESTORABLE_PROFILE_FIELDS)

    raw_credentials = user_data.get("apiCredentials") or []
    if not isinstance(raw_credentials, list):
        raise ArchiveValidationError("apiCredentials must be a list")
    credentials: list[dict[str, Any]] = []
    for document in raw_credentials:
        if not isinstance(document, dict):
            raise ArchiveValidationError("apiCredentials must be a list of objects")
        values = document_to_columns(
            ApiCredential, document, exclude=CREDENTIAL_EXCLUDED_FIELDS
        )
        if not values.get("api_provider"):
            raise ArchiveValidationError("API credential without apiProvider")
        credentials.append(values)

    library_section = _section(decoded.db_dump, "libraryEntries", where="dump")
    catalog_section = _section(decoded.db_dump, "catalogItems", where="dump")

    catalog: dict[str, list[CatalogRow]] = {}
    entries: dict[str, list[EntryRow]] = {}
    for kind in MEDIA_KINDS:
        catalog[kind.key] = [
            _catalog_row(kind, document)
            for document in _rows(catalog_section, kind.key, where="catalogItems")
        ]
        entries[kind.key] = [
            _entry_row(kind, document)
            for document in _rows(library_section, kind.key, where="libraryEntries")
        ]

    return RestorePlan(
        manifest=manifest,
        profile=profile,
        credentials=credentials,
        catalog=catalog,
        entries=entries,
        images=list(decoded.images),
    )


def _catalog_row(kind: MediaKind, document: dict[str, Any]) -> CatalogRow:
    values = document_to_columns(
        kind.catalog_model, document, exclude=CATALOG_EXCLUDED_FIELDS
    )
    provider_id = values.get(kind.provider_id_field)
    if provider_id is None:
        raise ArchiveValidationError(
            f"Archived {kind.label} is missing {camelize(kind.provider_id_field)}"
        )
    return CatalogRow(old_id=_id_key(document.get("id")), provider_id=provider_id, values=values)


def _entry_row(kind: MediaKind, document: dict[str, Any]) -> EntryRow:
    fk = kind.catalog_fk_field
    old_catalog_id = document.get(camelize(fk), document.get(fk))
    values = document_to_columns(
        kind.entry_model, document, exclude=ENTRY_EXCLUDED_FIELDS | {fk}
    )
    try:
        values["status"] = MediaStatus.coerce(values.get("status") or "BACKLOG").value
        quick_review = QuickReview.coerce(values.get("quick_review"))
    except ValueError as exc:
        raise ArchiveValidationError(f"Invalid archived {kind.label} entry: {exc}") from exc
    values["quick_review"] = quick_review.value if quick_review else None
    return EntryRow(old_catalog_id=_id_key(old_catalog_id), values=values)


class BackupImporter:
    """Replaces one user's library with the contents of an archive."""

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        image_cache: ImageCacheService,
    ) -> None:
        self._settings = settings
        self._session_factory = session_factory
        self._image_cache = image_cache
        self._background_tasks: set[asyncio.Task[int]] = set()

    async def import_archive(self, user_id: int, source: bytes | IO[bytes]) -> ImportResult:
        decoded = await asyncio.to_thread(read_archive, source)
        plan = build_restore_plan(decoded)

        budget = self._settings.transaction_timeout_for(plan.item_count)
        try:
            summary = await asyncio.wait_for(self._restore(user_id, plan), timeout=budget)
        except asyncio.TimeoutError as exc:
            logger.error(
                "Import for user %s exceeded the %.0fs transaction budget", user_id, budget
            )
            raise ImportFailed("transaction timeout", exc) from exc

        warnings: list[str] = []
        summary.images = await self._restore_images(plan.images, warnings)
        logger.info("Imported backup for user %s: %s", user_id, summary.model_dump())
        return ImportResult(
            success=True,
            message="Backup imported successfully",
            imported=summary,
            warnings=warnings,
        )

    async def _restore(self, user_id: int, plan: RestorePlan) -> ImportSummary:
        summary = ImportSummary()
        step = "begin"
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    user = await session.get(User, user_id)
                    if user is None:
                        raise NotFound(f"User {user_id} not found")

                    step = "wipe"
                    for kind in MEDIA_KINDS:
                        await session.execute(
                            delete(kind.entry_model).where(
                                kind.entry_model.user_id == user_id
                            )
                        )
                    await session.execute(
                        delete(ApiCredential).where(ApiCredential.user_id == user_id)
                    )

                    step = "profile"
                    if plan.profile is not None:
                        for key, value in plan.profile.items():
                            setattr(user, key, value)
                        summary.profile = True

                    step = "credentials"
                    for values in plan.credentials:
                        session.add(ApiCredential(**values, user_id=user_id))
                    await session.flush()
                    summary.api_credentials = len(plan.credentials)

                    mappings: dict[str, dict[str, int]] = {}
                    for kind in MEDIA_KINDS:
                        step = f"catalog ({kind.key})"
                        mapping: dict[str, int] = {}
                        for row in plan.catalog[kind.key]:
                            new_id = await self._upsert_catalog_item(session, kind, row)
                            if row.old_id is not None:
                                mapping[row.old_id] = new_id
                        mappings[kind.key] = mapping
                        setattr(summary, kind.key, len(plan.catalog[kind.key]))

                    for kind in MEDIA_KINDS:
                        step = f"library entries ({kind.key})"
                        created, skipped = await self._restore_entries(
                            session, kind, user_id, plan.entries[kind.key], mappings[kind.key]
                        )
                        setattr(summary, f"user_{kind.key}", created)
                        summary.skipped += skipped
                        await session.flush()

                    step = "commit"
        except BackupError:
            raise
        except Exception as exc:
            logger.exception("Import for user %s failed during %s", user_id, step)
            raise ImportFailed(step, exc) from exc
        return summary

    async def _find_catalog_id(
        self, session: AsyncSession, kind: MediaKind, provider_id: int
    ) -> int | None:
        model = kind.catalog_model
        result = await session.execute(
            select(model.id).where(getattr(model, kind.provider_id_field) == provider_id)
        )
        return result.scalar_one_or_none()

    async def _upsert_catalog_item(
        self, session: AsyncSession, kind: MediaKind, row: CatalogRow
    ) -> int:
        """Reuse the shared row for ``row.provider_id`` or insert it."""

        existing = await self._find_catalog_id(session, kind, row.provider_id)
        if existing is not None:
            return existing

        item = kind.catalog_model(**row.values)
        try:
            async with session.begin_nested():
                session.add(item)
        except IntegrityError:
            # Another import created the same provider ID first.
            existing = await self._find_catalog_id(session, kind, row.provider_id)
            if existing is None:
                raise
            logger.info(
                "Reusing concurrently created %s %s=%s",
                kind.label,
                kind.provider_id_field,
                row.provider_id,
            )
            return existing
        return item.id

    async def _restore_entries(
        self,
        session: AsyncSession,
        kind: MediaKind,
        user_id: int,
        rows: list[EntryRow],
        mapping: Mapping[str, int],
    ) -> tuple[int, int]:
        created = 0
        skipped = 0
        restored_catalog_ids: set[int] = set()
        for row in rows:
            new_catalog_id = (
                mapping.get(row.old_catalog_id) if row.old_catalog_id is not None else None
            )
            if new_catalog_id is None:
                logger.warning(
                    "Skipping archived %s entry referencing missing catalog item %s",
                    kind.label,
                    row.old_catalog_id,
                )
                skipped += 1
                continue
            if new_catalog_id in restored_catalog_ids:
                logger.warning(
                    "Skipping duplicate archived %s entry for catalog item %s",
                    kind.label,
                    row.old_catalog_id,
                )
                skipped += 1
                continue
            await self._create_library_entry(session, kind, user_id, new_catalog_id, row.values)
            restored_catalog_ids.add(new_catalog_id)
            created += 1
        return created, skipped

    async def _create_library_entry(
        self,
        session: AsyncSession,
        kind: MediaKind,
        user_id: int,
        catalog_id: int,
        values: dict[str, Any],
    ) -> None:
        session.add(
            kind.entry_model(
                **values, user_id=user_id, **{kind.catalog_fk_field: catalog_id}
            )
        )

    async def _restore_images(self, images: list[CachedImage], warnings: list[str]) -> int:
        """Push archived images to the cache without failing the import."""

        if not images:
            return 0
        task = asyncio.create_task(self._image_cache.restore(images))
        try:
            return await asyncio.wait_for(
                asyncio.shield(task),
                timeout=self._settings.backup_image_restore_timeout_seconds,
            )
        except asyncio.TimeoutError:
            self._background_tasks.add(task)
            task.add_done_callback(self._finish_background_restore)
            warning = ImageRestoreWarning(
                "Image restoration is still running in the background"
            )
        except Exception as exc:
            warning = ImageRestoreWarning(
                f"Image restoration failed, but database restore was successful: {exc}"
            )
        logger.warning("%s", warning)
        warnings.append(str(warning))
        return 0

    def _finish_background_restore(self, task: asyncio.Task[int]) -> None:
        self._background_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Background image restoration failed: %s", exc)
        else:
            logger.info("Background image restoration wrote %s images", task.result())
