"""SQLAlchemy ORM models backing the persistent state."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .database import Base


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )


class User(TimestampMixin, Base):
    """A registered account owning a personal media library."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), unique=True)
    password_hash: Mapped[str] = mapped_column(String(255))
    first_name: Mapped[str | None] = mapped_column(String(120), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(120), nullable=True)
    avatar_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    timezone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    theme_preference: Mapped[str | None] = mapped_column(
        String(16), default="system", nullable=True
    )

    api_credentials: Mapped[list["ApiCredential"]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )


class ApiCredential(TimestampMixin, Base):
    """Per-provider secrets a user configured for metadata lookups."""

    __tablename__ = "user_api_credentials"
    __table_args__ = (
        UniqueConstraint("user_id", "api_provider", name="uq_credential_provider"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE")
    )
    api_provider: Mapped[str] = mapped_column(String(32))
    api_key: Mapped[str | None] = mapped_column(Text, nullable=True)
    client_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    client_secret: Mapped[str | None] = mapped_column(Text, nullable=True)
    access_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    user: Mapped[User] = relationship(back_populates="api_credentials")


class Game(TimestampMixin, Base):
    """IGDB-sourced game metadata shared by every user."""

    __tablename__ = "games"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    igdb_id: Mapped[int] = mapped_column(BigInteger, unique=True, index=True)
    name: Mapped[str] = mapped_column(String(255))
    cover_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    banner_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    artworks: Mapped[list[str]] = mapped_column(JSON, default=list)
    screenshots: Mapped[list[str]] = mapped_column(JSON, default=list)
    release_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    genres: Mapped[list[str]] = mapped_column(JSON, default=list)
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    platforms: Mapped[list[str]] = mapped_column(JSON, default=list)
    developer: Mapped[str | None] = mapped_column(String(255), nullable=True)
    publisher: Mapped[str | None] = mapped_column(String(255), nullable=True)
    game_engine: Mapped[str | None] = mapped_column(String(255), nullable=True)
    esrb_rating: Mapped[str | None] = mapped_column(String(32), nullable=True)
    website: Mapped[str | None] = mapped_column(String(512), nullable=True)
    franchise: Mapped[str | None] = mapped_column(String(255), nullable=True)
    rating: Mapped[float | None] = mapped_column(Float, nullable=True)
    total_rating: Mapped[float | None] = mapped_column(Float, nullable=True)
    aggregated_rating: Mapped[float | None] = mapped_column(Float, nullable=True)


class Movie(TimestampMixin, Base):
    """TMDB-sourced movie metadata shared by every user."""

    __tablename__ = "movies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tmdb_id: Mapped[int] = mapped_column(BigInteger, unique=True, index=True)
    name: Mapped[str] = mapped_column(String(255))
    original_title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    cover_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    backdrop_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    release_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    genres: Mapped[list[str]] = mapped_column(JSON, default=list)
    director: Mapped[str | None] = mapped_column(String(255), nullable=True)
    cast: Mapped[list[Any]] = mapped_column(JSON, default=list)
    runtime: Mapped[int | None] = mapped_column(Integer, nullable=True)
    rating: Mapped[float | None] = mapped_column(Float, nullable=True)
    vote_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    budget: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    revenue: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    homepage: Mapped[str | None] = mapped_column(String(512), nullable=True)
    imdb_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    tagline: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str | None] = mapped_column(String(64), nullable=True)
    original_language: Mapped[str | None] = mapped_column(String(16), nullable=True)


class Show(TimestampMixin, Base):
    """TMDB-sourced TV show metadata shared by every user."""

    __tablename__ = "shows"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tmdb_id: Mapped[int] = mapped_column(BigInteger, unique=True, index=True)
    name: Mapped[str] = mapped_column(String(255))
    original_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    cover_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    backdrop_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    first_air_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_air_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    genres: Mapped[list[str]] = mapped_column(JSON, default=list)
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    networks: Mapped[list[str]] = mapped_column(JSON, default=list)
    creators: Mapped[list[str]] = mapped_column(JSON, default=list)
    cast: Mapped[list[Any]] = mapped_column(JSON, default=list)
    seasons: Mapped[int | None] = mapped_column(Integer, nullable=True)
    episodes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    episode_runtime: Mapped[int | None] = mapped_column(Integer, nullable=True)
    rating: Mapped[float | None] = mapped_column(Float, nullable=True)
    vote_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    homepage: Mapped[str | None] = mapped_column(String(512), nullable=True)
    imdb_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    tagline: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str | None] = mapped_column(String(64), nullable=True)
    type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    original_language: Mapped[str | None] = mapped_column(String(16), nullable=True)
    popularity: Mapped[float | None] = mapped_column(Float, nullable=True)
    certification: Mapped[str | None] = mapped_column(String(16), nullable=True)
    trailer_key: Mapped[str | None] = mapped_column(String(64), nullable=True)


class Book(TimestampMixin, Base):
    """Hardcover-sourced book metadata shared by every user."""

    __tablename__ = "books"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    hardcover_id: Mapped[int] = mapped_column(BigInteger, unique=True, index=True)
    title: Mapped[str] = mapped_column(String(512))
    subtitle: Mapped[str | None] = mapped_column(String(512), nullable=True)
    alternative_titles: Mapped[list[str]] = mapped_column(JSON, default=list)
    cover_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    release_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    pages: Mapped[int | None] = mapped_column(Integer, nullable=True)
    authors: Mapped[list[str]] = mapped_column(JSON, default=list)
    series: Mapped[str | None] = mapped_column(String(255), nullable=True)
    series_names: Mapped[list[str]] = mapped_column(JSON, default=list)
    series_position: Mapped[float | None] = mapped_column(Float, nullable=True)
    genres: Mapped[list[str]] = mapped_column(JSON, default=list)
    tags: Mapped[list[str]] = mapped_column(JSON, default=list)
    moods: Mapped[list[str]] = mapped_column(JSON, default=list)
    average_rating: Mapped[float | None] = mapped_column(Float, nullable=True)
    has_audiobook: Mapped[bool] = mapped_column(Boolean, default=False)
    has_ebook: Mapped[bool] = mapped_column(Boolean, default=False)


class LibraryEntryMixin(TimestampMixin):
    """Columns every per-user library row carries."""

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    status: Mapped[str] = mapped_column(String(16), default="BACKLOG")
    rating: Mapped[float | None] = mapped_column(Float, nullable=True)
    quick_review: Mapped[str | None] = mapped_column(String(16), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)


class UserGame(LibraryEntryMixin, Base):
    __tablename__ = "user_games"
    __table_args__ = (UniqueConstraint("user_id", "game_id", name="uq_user_game"),)

    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True
    )
    game_id: Mapped[int] = mapped_column(Integer, ForeignKey("games.id"))
    user_platform: Mapped[str | None] = mapped_column(String(120), nullable=True)

    game: Mapped[Game] = relationship()


class UserMovie(LibraryEntryMixin, Base):
    __tablename__ = "user_movies"
    __table_args__ = (UniqueConstraint("user_id", "movie_id", name="uq_user_movie"),)

    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True
    )
    movie_id: Mapped[int] = mapped_column(Integer, ForeignKey("movies.id"))

    movie: Mapped[Movie] = relationship()


class UserShow(LibraryEntryMixin, Base):
    __tablename__ = "user_shows"
    __table_args__ = (UniqueConstraint("user_id", "show_id", name="uq_user_show"),)

    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True
    )
    show_id: Mapped[int] = mapped_column(Integer, ForeignKey("shows.id"))
    current_season: Mapped[int | None] = mapped_column(Integer, nullable=True)
    current_episode: Mapped[int | None] = mapped_column(Integer, nullable=True)

    show: Mapped[Show] = relationship()


class UserBook(LibraryEntryMixin, Base):
    __tablename__ = "user_books"
    __table_args__ = (UniqueConstraint("user_id", "book_id", name="uq_user_book"),)

    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True
    )
    book_id: Mapped[int] = mapped_column(Integer, ForeignKey("books.id"))
    current_page: Mapped[int | None] = mapped_column(Integer, nullable=True)

    book: Mapped[Book] = relationship()
