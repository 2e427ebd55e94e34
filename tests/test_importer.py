"""Tests for restoring backup archives into an account."""

from __future__ import annotations

import asyncio
import io
import json
import zipfile
from pathlib import Path
from typing import Any, Iterable, cast

import httpx
import pytest
from sqlalchemy import func, select

from app.config import Settings
from app.database import Database
from app.db_models import (
    ApiCredential,
    Book,
    Game,
    Movie,
    User,
    UserBook,
    UserGame,
    UserMovie,
)
from app.errors import ArchiveValidationError, ImportFailed, NotFound
from app.models import CachedImage
from app.services.archive import DUMP_PATH, USER_DATA_PATH
from app.services.backup import BackupService
from app.services.image_cache import ImageCacheService
from app.services.importer import BackupImporter


def build_settings(tmp_path: Path, **overrides: Any) -> Settings:
    base = {"IMAGE_CACHE_DIR": str(tmp_path / "images")}
    base.update(overrides)
    return Settings(_env_file=None, **base)  # type: ignore[arg-type]


def build_image_cache(settings: Settings) -> ImageCacheService:
    return ImageCacheService(settings, cast(httpx.AsyncClient, object()))


def build_archive(
    *,
    user_data: dict[str, Any] | None = None,
    library_entries: dict[str, list[dict[str, Any]]] | None = None,
    catalog_items: dict[str, list[dict[str, Any]]] | None = None,
    metadata: dict[str, Any] | None = None,
    images: Iterable[tuple[str, bytes]] = (),
) -> bytes:
    dump = {
        "libraryEntries": library_entries or {},
        "catalogItems": catalog_items or {},
        "metadata": {"exportDate": "2024-05-01T12:00:00Z", "version": "1.0.0", "userId": 9}
        if metadata is None
        else metadata,
    }
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        archive.writestr(
            USER_DATA_PATH,
            json.dumps(user_data or {"profile": {}, "apiCredentials": []}),
        )
        archive.writestr(DUMP_PATH, json.dumps(dump))
        for name, data in images:
            archive.writestr(f"images/{name}", data)
    return buffer.getvalue()


def scenario_archive() -> bytes:
    """Two games and one movie exported from another installation."""

    return build_archive(
        user_data={
            "profile": {
                "email": "someone-else@example.com",
                "firstName": "Grace",
                "lastName": "Hopper",
                "timezone": "Europe/Paris",
            },
            "apiCredentials": [
                {"id": 11, "userId": 9, "apiProvider": "tmdb", "apiKey": "k-123"}
            ],
        },
        library_entries={
            "games": [
                {
                    "id": 1,
                    "userId": 9,
                    "gameId": 7,
                    "status": "COMPLETED",
                    "rating": 4.5,
                    "notes": "Finished the Eye",
                },
                {"id": 2, "userId": 9, "gameId": 8, "status": "PLAYING"},
            ],
            "movies": [
                {
                    "id": 3,
                    "userId": 9,
                    "movieId": 3,
                    "status": "BACKLOG",
                    "rating": 5,
                    "quickReview": "positive",
                    "notes": "Watch with subtitles",
                }
            ],
        },
        catalog_items={
            "games": [
                {"id": 7, "igdbId": 100, "name": "Outer Wilds", "genres": ["Adventure"]},
                {"id": 8, "igdbId": 200, "name": "Hades", "releaseDate": "2020-09-17T00:00:00.000Z"},
            ],
            "movies": [{"id": 3, "tmdbId": 55, "name": "Arrival"}],
        },
        images=[("co1abc.jpg", b"cover")],
    )


async def create_user(database: Database, email: str = "ada@example.com") -> int:
    async with database.session_factory() as session:
        user = User(email=email, password_hash="$2b$12$secret", first_name="Ada")
        session.add(user)
        await session.commit()
        return user.id


async def count(database: Database, model: type) -> int:
    async with database.session_factory() as session:
        return await session.scalar(select(func.count()).select_from(model)) or 0


async def snapshot(database: Database, user_id: int) -> dict[str, Any]:
    async with database.session_factory() as session:
        games = (await session.execute(select(Game.id, Game.igdb_id).order_by(Game.id))).all()
        entries = (
            await session.execute(
                select(Game.igdb_id, UserGame.status, UserGame.rating, UserGame.notes)
                .join(UserGame, UserGame.game_id == Game.id)
                .where(UserGame.user_id == user_id)
                .order_by(Game.igdb_id)
            )
        ).all()
        movie_entries = (
            await session.execute(
                select(Movie.tmdb_id, UserMovie.status, UserMovie.rating, UserMovie.notes)
                .join(UserMovie, UserMovie.movie_id == Movie.id)
                .where(UserMovie.user_id == user_id)
                .order_by(Movie.tmdb_id)
            )
        ).all()
        credentials = (
            await session.execute(
                select(ApiCredential.api_provider).where(ApiCredential.user_id == user_id)
            )
        ).scalars().all()
        user = await session.get(User, user_id)
        assert user is not None
        return {
            "games": list(games),
            "entries": list(entries),
            "movie_entries": list(movie_entries),
            "credentials": list(credentials),
            "profile": (user.email, user.first_name, user.last_name),
        }


def test_import_concrete_scenario_into_fresh_account(tmp_path) -> None:
    """Entries are relinked to freshly assigned catalog IDs by provider ID."""

    async def runner() -> None:
        database = Database(f"sqlite+aiosqlite:///{tmp_path / 'import.db'}")
        await database.create_all()
        user_id = await create_user(database)
        # Occupy low surrogate IDs so archived IDs cannot line up by accident.
        async with database.session_factory() as session:
            session.add_all([Game(igdb_id=1, name="Tetris"), Game(igdb_id=2, name="Doom")])
            await session.commit()

        settings = build_settings(tmp_path)
        importer = BackupImporter(settings, database.session_factory, build_image_cache(settings))
        result = await importer.import_archive(user_id, scenario_archive())

        payload = result.to_payload()
        assert payload["success"] is True
        assert payload["message"] == "Backup imported successfully"
        assert payload["imported"]["games"] == 2
        assert payload["imported"]["movies"] == 1
        assert payload["imported"]["userGames"] == 2
        assert payload["imported"]["userMovies"] == 1
        assert payload["imported"]["apiCredentials"] == 1
        assert payload["imported"]["images"] == 1
        assert payload["imported"]["skipped"] == 0

        async with database.session_factory() as session:
            linked = (
                await session.execute(
                    select(Game.igdb_id, UserGame.status, UserGame.notes)
                    .join(UserGame, UserGame.game_id == Game.id)
                    .where(UserGame.user_id == user_id)
                    .order_by(Game.igdb_id)
                )
            ).all()
            movie_entry = (
                await session.execute(
                    select(Movie.tmdb_id, UserMovie.quick_review)
                    .join(UserMovie, UserMovie.movie_id == Movie.id)
                    .where(UserMovie.user_id == user_id)
                )
            ).one()
            game_ids = (
                await session.execute(select(Game.id).where(Game.igdb_id.in_([100, 200])))
            ).scalars().all()

        assert linked == [(100, "COMPLETED", "Finished the Eye"), (200, "ACTIVE", None)]
        assert tuple(movie_entry) == (55, "POSITIVE")
        assert set(game_ids).isdisjoint({7, 8})

        state = await snapshot(database, user_id)
        # The email is never overwritten; other profile fields are.
        assert state["profile"] == ("ada@example.com", "Grace", "Hopper")
        assert state["credentials"] == ["tmdb"]
        assert (tmp_path / "images" / "co1abc.jpg").read_bytes() == b"cover"

        await database.dispose()

    asyncio.run(runner())


def test_round_trip_into_same_account_does_not_duplicate_catalog(tmp_path) -> None:
    async def runner() -> None:
        database = Database(f"sqlite+aiosqlite:///{tmp_path / 'import.db'}")
        await database.create_all()
        user_id = await create_user(database)
        settings = build_settings(tmp_path)
        service = BackupService(settings, database.session_factory, build_image_cache(settings))

        await service.import_backup(user_id, scenario_archive())
        before = await snapshot(database, user_id)

        archive = io.BytesIO()
        manifest = await service.create_backup(user_id, archive)
        assert manifest.counts["userGames"] == 2

        result = await service.import_backup(user_id, archive.getvalue())
        after = await snapshot(database, user_id)

        assert result.success is True
        assert after["games"] == before["games"]
        assert after["entries"] == before["entries"]
        assert after["movie_entries"] == before["movie_entries"]
        assert before["entries"] == [
            (100, "COMPLETED", 4.5, "Finished the Eye"),
            (200, "ACTIVE", None, None),
        ]
        assert before["movie_entries"] == [(55, "BACKLOG", 5.0, "Watch with subtitles")]
        assert after["profile"] == before["profile"]
        assert await count(database, Game) == 2
        assert await count(database, Movie) == 1

        await database.dispose()

    asyncio.run(runner())


def test_import_into_second_account_reuses_catalog_rows(tmp_path) -> None:
    async def runner() -> None:
        database = Database(f"sqlite+aiosqlite:///{tmp_path / 'import.db'}")
        await database.create_all()
        first = await create_user(database, "first@example.com")
        second = await create_user(database, "second@example.com")
        settings = build_settings(tmp_path)
        importer = BackupImporter(settings, database.session_factory, build_image_cache(settings))

        await importer.import_archive(first, scenario_archive())
        await importer.import_archive(second, scenario_archive())

        assert await count(database, Game) == 2
        assert await count(database, UserGame) == 4
        first_state = await snapshot(database, first)
        second_state = await snapshot(database, second)
        assert first_state["entries"] == second_state["entries"]

        await database.dispose()

    asyncio.run(runner())


def test_import_replaces_existing_library(tmp_path) -> None:
    async def runner() -> None:
        database = Database(f"sqlite+aiosqlite:///{tmp_path / 'import.db'}")
        await database.create_all()
        user_id = await create_user(database)
        async with database.session_factory() as session:
            book = Book(hardcover_id=77, title="Dune")
            session.add(book)
            await session.flush()
            session.add(UserBook(user_id=user_id, book_id=book.id, status="ACTIVE"))
            await session.commit()

        settings = build_settings(tmp_path)
        importer = BackupImporter(settings, database.session_factory, build_image_cache(settings))
        await importer.import_archive(user_id, scenario_archive())

        assert await count(database, UserBook) == 0
        # Shared catalog rows are never deleted.
        assert await count(database, Book) == 1

        await database.dispose()

    asyncio.run(runner())


class FailingImporter(BackupImporter):
    """Importer that breaks after the first library entry is staged."""

    async def _create_library_entry(self, session, kind, user_id, catalog_id, values):
        if getattr(self, "_created", 0) >= 1:
            raise RuntimeError("disk full")
        self._created = getattr(self, "_created", 0) + 1
        await super()._create_library_entry(session, kind, user_id, catalog_id, values)


def test_failed_import_leaves_database_unchanged(tmp_path) -> None:
    """A failure part way through rolls back every write of the import."""

    async def runner() -> None:
        database = Database(f"sqlite+aiosqlite:///{tmp_path / 'import.db'}")
        await database.create_all()
        user_id = await create_user(database)
        settings = build_settings(tmp_path)
        good = BackupImporter(settings, database.session_factory, build_image_cache(settings))
        await good.import_archive(
            user_id,
            build_archive(
                user_data={"profile": {"firstName": "Before"}, "apiCredentials": []},
                library_entries={"games": [{"id": 1, "gameId": 5, "status": "DROPPED"}]},
                catalog_items={"games": [{"id": 5, "igdbId": 300, "name": "Celeste"}]},
            ),
        )
        before = await snapshot(database, user_id)

        failing = FailingImporter(settings, database.session_factory, build_image_cache(settings))
        with pytest.raises(ImportFailed) as excinfo:
            await failing.import_archive(user_id, scenario_archive())

        assert "library entries" in excinfo.value.step
        assert isinstance(excinfo.value.cause, RuntimeError)
        assert await snapshot(database, user_id) == before
        assert await count(database, Movie) == 0

        await database.dispose()

    asyncio.run(runner())


def test_dangling_and_duplicate_entries_are_skipped(tmp_path) -> None:
    async def runner() -> None:
        database = Database(f"sqlite+aiosqlite:///{tmp_path / 'import.db'}")
        await database.create_all()
        user_id = await create_user(database)
        settings = build_settings(tmp_path)
        importer = BackupImporter(settings, database.session_factory, build_image_cache(settings))

        result = await importer.import_archive(
            user_id,
            build_archive(
                library_entries={
                    "games": [
                        {"id": 1, "gameId": 7, "status": "ACTIVE"},
                        {"id": 2, "gameId": 7, "status": "COMPLETED"},
                        {"id": 3, "gameId": 999, "status": "ACTIVE"},
                    ]
                },
                catalog_items={"games": [{"id": 7, "igdbId": 100, "name": "Outer Wilds"}]},
            ),
        )

        assert result.imported.user_games == 1
        assert result.imported.skipped == 2
        assert await count(database, UserGame) == 1

        await database.dispose()

    asyncio.run(runner())


def test_import_unknown_user_raises_not_found(tmp_path) -> None:
    async def runner() -> None:
        database = Database(f"sqlite+aiosqlite:///{tmp_path / 'import.db'}")
        await database.create_all()
        settings = build_settings(tmp_path)
        importer = BackupImporter(settings, database.session_factory, build_image_cache(settings))

        with pytest.raises(NotFound):
            await importer.import_archive(42, scenario_archive())

        assert await count(database, Game) == 0
        await database.dispose()

    asyncio.run(runner())


@pytest.mark.parametrize(
    "metadata",
    [
        {"version": "2.0.0"},
        {"version": "banana"},
    ],
)
def test_import_rejects_unsupported_versions(tmp_path, metadata) -> None:
    async def runner() -> None:
        database = Database(f"sqlite+aiosqlite:///{tmp_path / 'import.db'}")
        await database.create_all()
        user_id = await create_user(database)
        settings = build_settings(tmp_path)
        importer = BackupImporter(settings, database.session_factory, build_image_cache(settings))

        with pytest.raises(ArchiveValidationError):
            await importer.import_archive(user_id, build_archive(metadata=metadata))

        await database.dispose()

    asyncio.run(runner())


def test_import_rejects_catalog_items_without_provider_id(tmp_path) -> None:
    async def runner() -> None:
        database = Database(f"sqlite+aiosqlite:///{tmp_path / 'import.db'}")
        await database.create_all()
        user_id = await create_user(database)
        settings = build_settings(tmp_path)
        importer = BackupImporter(settings, database.session_factory, build_image_cache(settings))

        with pytest.raises(ArchiveValidationError, match="igdbId"):
            await importer.import_archive(
                user_id, build_archive(catalog_items={"games": [{"id": 1, "name": "?"}]})
            )

        await database.dispose()

    asyncio.run(runner())


@pytest.mark.parametrize(
    ("catalog_items", "field"),
    [
        ({"games": [{"id": 7, "igdbId": 5}]}, "name"),
        ({"movies": [{"id": 3, "tmdbId": 55, "name": None}]}, "name"),
        ({"books": [{"id": 4, "hardcoverId": 77}]}, "title"),
    ],
)
def test_import_rejects_catalog_items_missing_required_fields(
    tmp_path, catalog_items, field
) -> None:
    """Rows the catalog tables cannot store are refused before any write."""

    async def runner() -> None:
        database = Database(f"sqlite+aiosqlite:///{tmp_path / 'import.db'}")
        await database.create_all()
        user_id = await create_user(database)
        settings = build_settings(tmp_path)
        importer = BackupImporter(settings, database.session_factory, build_image_cache(settings))

        with pytest.raises(ArchiveValidationError, match=f"missing {field}"):
            await importer.import_archive(user_id, build_archive(catalog_items=catalog_items))

        assert await count(database, Game) == 0
        assert await count(database, Movie) == 0
        assert await count(database, Book) == 0
        await database.dispose()

    asyncio.run(runner())


class SlowImporter(BackupImporter):
    """Stalls on every library entry so the transaction budget runs out."""

    async def _create_library_entry(self, session, kind, user_id, catalog_id, values):
        await asyncio.sleep(5)
        await super()._create_library_entry(session, kind, user_id, catalog_id, values)


def test_transaction_budget_overrun_rolls_back(tmp_path) -> None:
    async def runner() -> None:
        database = Database(f"sqlite+aiosqlite:///{tmp_path / 'import.db'}")
        await database.create_all()
        user_id = await create_user(database)
        settings = build_settings(tmp_path)
        await BackupImporter(
            settings, database.session_factory, build_image_cache(settings)
        ).import_archive(
            user_id,
            build_archive(
                library_entries={"games": [{"id": 1, "gameId": 5, "status": "DROPPED"}]},
                catalog_items={"games": [{"id": 5, "igdbId": 300, "name": "Celeste"}]},
            ),
        )
        before = await snapshot(database, user_id)

        # The configured floor is several seconds; shrink it for the test only.
        tight = settings.model_copy(
            update={
                "backup_transaction_timeout_seconds": 0.2,
                "backup_transaction_item_budget_seconds": 0.0,
            }
        )
        slow = SlowImporter(tight, database.session_factory, build_image_cache(tight))
        with pytest.raises(ImportFailed) as excinfo:
            await slow.import_archive(user_id, scenario_archive())

        assert excinfo.value.step == "transaction timeout"
        assert await snapshot(database, user_id) == before
        assert await count(database, Movie) == 0

        # The store is usable again once the timed-out transaction is gone.
        result = await BackupImporter(
            settings, database.session_factory, build_image_cache(settings)
        ).import_archive(user_id, scenario_archive())
        assert result.imported.user_games == 2

        await database.dispose()

    asyncio.run(runner())


class SlowImageCache(ImageCacheService):
    async def restore(self, images: Iterable[CachedImage]) -> int:  # type: ignore[override]
        await asyncio.sleep(0.3)
        return await super().restore(images)


def test_slow_image_restore_continues_in_background(tmp_path) -> None:
    async def runner() -> None:
        database = Database(f"sqlite+aiosqlite:///{tmp_path / 'import.db'}")
        await database.create_all()
        user_id = await create_user(database)
        settings = build_settings(tmp_path).model_copy(
            update={"backup_image_restore_timeout_seconds": 0.01}
        )
        importer = BackupImporter(
            settings,
            database.session_factory,
            SlowImageCache(settings, cast(httpx.AsyncClient, object())),
        )

        result = await importer.import_archive(user_id, scenario_archive())

        assert result.success is True
        assert result.imported.images == 0
        assert result.imported.user_games == 2
        assert result.warnings == ["Image restoration is still running in the background"]

        pending = list(importer._background_tasks)
        assert len(pending) == 1
        await asyncio.wait(pending)
        await asyncio.sleep(0)
        assert importer._background_tasks == set()
        assert (tmp_path / "images" / "co1abc.jpg").read_bytes() == b"cover"

        await database.dispose()

    asyncio.run(runner())


class BrokenImageCache(ImageCacheService):
    async def restore(self, images: Iterable[CachedImage]) -> int:  # type: ignore[override]
        raise OSError("read-only file system")


def test_image_restore_failure_is_a_warning(tmp_path) -> None:
    async def runner() -> None:
        database = Database(f"sqlite+aiosqlite:///{tmp_path / 'import.db'}")
        await database.create_all()
        user_id = await create_user(database)
        settings = build_settings(tmp_path)
        importer = BackupImporter(
            settings,
            database.session_factory,
            BrokenImageCache(settings, cast(httpx.AsyncClient, object())),
        )

        result = await importer.import_archive(user_id, scenario_archive())

        assert result.success is True
        assert result.imported.images == 0
        assert result.imported.user_games == 2
        assert len(result.warnings) == 1
        assert "read-only file system" in result.warnings[0]

        await database.dispose()

    asyncio.run(runner())


class RacingImporter(BackupImporter):
    """Misses the first lookup as if another import inserted the row meanwhile."""

    missed = False

    async def _find_catalog_id(self, session, kind, provider_id):
        if not self.missed:
            self.missed = True
            return None
        return await super()._find_catalog_id(session, kind, provider_id)


def test_concurrently_created_catalog_row_is_reused(tmp_path) -> None:
    async def runner() -> None:
        database = Database(f"sqlite+aiosqlite:///{tmp_path / 'import.db'}")
        await database.create_all()
        user_id = await create_user(database)
        async with database.session_factory() as session:
            existing = Game(igdb_id=100, name="Outer Wilds")
            session.add(existing)
            await session.commit()
            existing_id = existing.id

        settings = build_settings(tmp_path)
        importer = RacingImporter(settings, database.session_factory, build_image_cache(settings))
        result = await importer.import_archive(user_id, scenario_archive())

        assert result.imported.user_games == 2
        assert await count(database, Game) == 2
        state = await snapshot(database, user_id)
        assert (existing_id, 100) in state["games"]
        assert (100, "COMPLETED", 4.5, "Finished the Eye") in state["entries"]

        await database.dispose()

    asyncio.run(runner())


def test_legacy_flat_dump_is_importable(tmp_path) -> None:
    async def runner() -> None:
        database = Database(f"sqlite+aiosqlite:///{tmp_path / 'import.db'}")
        await database.create_all()
        user_id = await create_user(database)
        settings = build_settings(tmp_path)
        importer = BackupImporter(settings, database.session_factory, build_image_cache(settings))

        legacy_dump = {
            "userGames": [
                {"id": 1, "gameId": 4, "status": "WANT_TO_PLAY", "game": {"id": 4, "igdbId": 42, "name": "Braid"}}
            ],
            "metadata": {"exportDate": "2023-02-01T00:00:00Z"},
        }
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w") as archive:
            archive.writestr(USER_DATA_PATH, json.dumps({"profile": {}, "apiCredentials": []}))
            archive.writestr(DUMP_PATH, json.dumps(legacy_dump))

        result = await importer.import_archive(user_id, buffer.getvalue())

        assert result.imported.games == 1
        assert result.imported.user_games == 1
        state = await snapshot(database, user_id)
        assert [row.status for row in state["entries"]] == ["BACKLOG"]

        await database.dispose()

    asyncio.run(runner())
