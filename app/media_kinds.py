"""Media kind definitions tying catalog tables to library tables."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from .db_models import (
    Book,
    Game,
    Movie,
    Show,
    UserBook,
    UserGame,
    UserMovie,
    UserShow,
)

MediaKey = Literal["games", "movies", "shows", "books"]


@dataclass(frozen=True)
class MediaKind:
    """Describes one media type participating in backup and restore."""

    key: MediaKey
    label: str
    catalog_model: type
    entry_model: type
    provider_id_field: str
    catalog_fk_field: str
    relationship_name: str
    image_url_fields: tuple[str, ...]
    image_list_fields: tuple[str, ...] = ()

    @property
    def entries_total_key(self) -> str:
        return f"user{self.key.capitalize()}"

    @property
    def catalog_total_key(self) -> str:
        return self.key


MEDIA_KINDS: tuple[MediaKind, ...] = (
    MediaKind(
        key="games",
        label="game",
        catalog_model=Game,
        entry_model=UserGame,
        provider_id_field="igdb_id",
        catalog_fk_field="game_id",
        relationship_name="game",
        image_url_fields=("cover_url", "banner_url"),
        image_list_fields=("artworks", "screenshots"),
    ),
    MediaKind(
        key="movies",
        label="movie",
        catalog_model=Movie,
        entry_model=UserMovie,
        provider_id_field="tmdb_id",
        catalog_fk_field="movie_id",
        relationship_name="movie",
        image_url_fields=("cover_url", "backdrop_url"),
    ),
    MediaKind(
        key="shows",
        label="show",
        catalog_model=Show,
        entry_model=UserShow,
        provider_id_field="tmdb_id",
        catalog_fk_field="show_id",
        relationship_name="show",
        image_url_fields=("cover_url", "backdrop_url"),
    ),
    MediaKind(
        key="books",
        label="book",
        catalog_model=Book,
        entry_model=UserBook,
        provider_id_field="hardcover_id",
        catalog_fk_field="book_id",
        relationship_name="book",
        image_url_fields=("cover_url",),
    ),
)
