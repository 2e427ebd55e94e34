"""Zip container encoding and decoding for backup archives."""

from __future__ import annotations

import io
import json
import logging
import zipfile
import zlib
from datetime import datetime
from typing import IO, Any

from ..errors import CorruptArchive, InvalidFormat
from ..media_kinds import MEDIA_KINDS
from ..models import CachedImage, DecodedArchive, ExportBundle
from ..utils import sanitize_filename

logger = logging.getLogger(__name__)

USER_DATA_PATH = "user-data/profile-and-credentials.json"
DUMP_PATH = "database/dump.json"
IMAGES_PREFIX = "images/"
README_PATH = "README.md"

# Archives are cold exports; trade CPU for size.
COMPRESSION_LEVEL = 9
READ_CHUNK_SIZE = 64 * 1024

README_TEMPLATE = """# {product} Backup

Created: {created}
User ID: {user_id}

## Structure:
- user-data/profile-and-credentials.json - User profile and API credentials
- database/dump.json - Library entries, catalog items and export metadata
- images/ - Cached media images
- README.md - This file

## Restore:
Use the "Import Backup" feature in {product} Settings to restore this backup.
All data will be linked to the user performing the restore.
The account password is not part of the backup.
"""


def build_user_data_document(bundle: ExportBundle) -> dict[str, Any]:
    return {"profile": bundle.profile, "apiCredentials": bundle.api_credentials}


def build_dump_document(bundle: ExportBundle) -> dict[str, Any]:
    """Flatten library pairs into the entry and catalog arrays of ``dump.json``."""

    library_entries: dict[str, list[dict[str, Any]]] = {}
    catalog_items: dict[str, list[dict[str, Any]]] = {}
    for kind in MEDIA_KINDS:
        pairs = bundle.library.get(kind.key, [])
        library_entries[kind.key] = [pair.entry for pair in pairs]
        seen: set[Any] = set()
        items: list[dict[str, Any]] = []
        for pair in pairs:
            catalog_id = pair.catalog_item.get("id")
            if catalog_id in seen:
                continue
            seen.add(catalog_id)
            items.append(pair.catalog_item)
        catalog_items[kind.key] = items
    return {
        "libraryEntries": library_entries,
        "catalogItems": catalog_items,
        "metadata": bundle.manifest.to_document(),
    }


def render_readme(bundle: ExportBundle, *, product: str) -> str:
    created = bundle.manifest.export_date or datetime.utcnow()
    return README_TEMPLATE.format(
        product=product,
        created=created.isoformat(),
        user_id=bundle.manifest.user_id,
    )


def write_archive(
    bundle: ExportBundle, fileobj: IO[bytes], *, product: str = "BackLogus"
) -> int:
    """Stream ``bundle`` into ``fileobj`` as a zip archive.

    Returns the number of image entries written.
    """

    written_images: set[str] = set()
    with zipfile.ZipFile(
        fileobj,
        mode="w",
        compression=zipfile.ZIP_DEFLATED,
        compresslevel=COMPRESSION_LEVEL,
    ) as archive:
        _write_json(archive, USER_DATA_PATH, build_user_data_document(bundle))
        _write_json(archive, DUMP_PATH, build_dump_document(bundle))

        for image in bundle.images:
            filename = sanitize_filename(image.filename)
            if filename is None or filename in written_images:
                logger.debug("Skipping duplicate or unnamed image %r", image.filename)
                continue
            with archive.open(f"{IMAGES_PREFIX}{filename}", mode="w") as handle:
                view = memoryview(image.data)
                for offset in range(0, len(view), READ_CHUNK_SIZE):
                    handle.write(view[offset : offset + READ_CHUNK_SIZE])
            written_images.add(filename)

        archive.writestr(README_PATH, render_readme(bundle, product=product))
    return len(written_images)


def _write_json(archive: zipfile.ZipFile, path: str, document: dict[str, Any]) -> None:
    with archive.open(path, mode="w") as raw:
        with io.TextIOWrapper(raw, encoding="utf-8") as text:
            json.dump(document, text, indent=2, ensure_ascii=False)


def read_archive(source: bytes | IO[bytes]) -> DecodedArchive:
    """Decode an archive produced by :func:`write_archive`.

    Entries are read one at a time; image bytes are collected, the two JSON
    documents are parsed and everything else is ignored.
    """

    stream = io.BytesIO(source) if isinstance(source, (bytes, bytearray)) else source
    try:
        archive = zipfile.ZipFile(stream)
    except (zipfile.BadZipFile, zipfile.LargeZipFile) as exc:
        raise InvalidFormat("Invalid ZIP file format") from exc

    user_data: dict[str, Any] | None = None
    db_dump: dict[str, Any] | None = None
    images: list[CachedImage] = []

    with archive:
        for info in archive.infolist():
            if info.is_dir():
                continue
            name = info.filename
            if name.startswith(IMAGES_PREFIX):
                filename = sanitize_filename(name[len(IMAGES_PREFIX) :])
                if filename is None:
                    logger.warning("Ignoring image entry with unusable name %r", name)
                    continue
                images.append(
                    CachedImage(filename=filename, data=_read_entry(archive, info))
                )
            elif name == USER_DATA_PATH:
                user_data = _read_document(archive, info)
            elif name == DUMP_PATH:
                db_dump = _read_document(archive, info)

    if user_data is None or db_dump is None:
        missing = [
            path
            for path, value in ((USER_DATA_PATH, user_data), (DUMP_PATH, db_dump))
            if value is None
        ]
        raise CorruptArchive(
            f"Invalid backup file: missing {', '.join(missing)}", path=missing[0]
        )

    return DecodedArchive(
        user_data=user_data,
        db_dump=normalize_dump(db_dump),
        images=images,
    )


def _read_entry(archive: zipfile.ZipFile, info: zipfile.ZipInfo) -> bytes:
    buffer = bytearray()
    try:
        with archive.open(info) as handle:
            while chunk := handle.read(READ_CHUNK_SIZE):
                buffer.extend(chunk)
    except (zipfile.BadZipFile, zlib.error, NotImplementedError, EOFError) as exc:
        raise CorruptArchive(
            f"Failed to read {info.filename}: {exc}", path=info.filename
        ) from exc
    return bytes(buffer)


def _read_document(archive: zipfile.ZipFile, info: zipfile.ZipInfo) -> dict[str, Any]:
    raw = _read_entry(archive, info)
    try:
        document = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise CorruptArchive(
            f"Failed to parse {info.filename}: {exc}", path=info.filename
        ) from exc
    if not isinstance(document, dict):
        raise CorruptArchive(
            f"Failed to parse {info.filename}: expected a JSON object",
            path=info.filename,
        )
    return document


def normalize_dump(dump: dict[str, Any]) -> dict[str, Any]:
    """Rewrite legacy flat dumps into the ``libraryEntries``/``catalogItems`` layout."""

    if "libraryEntries" in dump or "catalogItems" in dump:
        return dump

    legacy_keys = {kind.entries_total_key for kind in MEDIA_KINDS} | {
        kind.key for kind in MEDIA_KINDS
    }
    if not legacy_keys.intersection(dump):
        return dump

    library_entries: dict[str, list[dict[str, Any]]] = {}
    catalog_items: dict[str, list[dict[str, Any]]] = {}
    for kind in MEDIA_KINDS:
        raw_entries = dump.get(kind.entries_total_key) or []
        items = list(dump.get(kind.key) or [])
        known_ids = {item.get("id") for item in items if isinstance(item, dict)}
        entries: list[dict[str, Any]] = []
        for raw_entry in raw_entries:
            if not isinstance(raw_entry, dict):
                continue
            entry = dict(raw_entry)
            nested = entry.pop(kind.label, None)
            if isinstance(nested, dict) and nested.get("id") not in known_ids:
                items.append(nested)
                known_ids.add(nested.get("id"))
            entries.append(entry)
        library_entries[kind.key] = entries
        catalog_items[kind.key] = items

    logger.info("Normalised legacy backup dump layout")
    return {
        "libraryEntries": library_entries,
        "catalogItems": catalog_items,
        "metadata": dump.get("metadata") or {},
    }
