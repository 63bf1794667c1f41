"""
Persistence for the view counter.

``DatabaseManager`` owns the connection pool for the life of the process and
is closed exactly once by the lifecycle coordinator. ``ViewCountStore`` keeps
the per ``(service, user)`` view counts.
"""

import os
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine, select, text, update
from sqlalchemy.exc import ArgumentError, IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from viewcounter.errors import ConfigError, CountUpdateError, DatabaseConnectionError
from viewcounter.models import Base, ProfileView


class DatabaseManager:
    """Manages the database engine (connection pool) and sessions."""

    def __init__(self, database_url: str, pool_size: int = 5):
        self.database_url = database_url
        engine_kwargs = {"echo": os.getenv("SQL_DEBUG") == "1", "pool_pre_ping": True}
        if database_url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if ":memory:" in database_url or database_url == "sqlite://":
                # One shared connection, otherwise every checkout sees an empty database
                engine_kwargs["poolclass"] = StaticPool
        else:
            engine_kwargs["pool_size"] = pool_size

        try:
            self.engine = create_engine(database_url, **engine_kwargs)
        except ArgumentError as e:
            # Unparseable URL or unknown dialect
            raise ConfigError(f"invalid database_url: {e}") from e
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)
        self._connected = False
        self._closed = False

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def closed(self) -> bool:
        return self._closed

    def connect(self) -> None:
        """Check out a connection, verify it works and create missing tables."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            Base.metadata.create_all(bind=self.engine)
        except SQLAlchemyError as e:
            self.engine.dispose()
            raise DatabaseConnectionError(f"failed to connect to database: {e}") from e
        self._connected = True

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """Get a database session with automatic commit/rollback."""
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def close(self) -> None:
        """Close every pooled connection. Blocks until the pool is disposed."""
        if self._closed:
            return
        self.engine.dispose()
        self._closed = True


class ViewCountStore:
    """Per-user view counters backed by the ``profile_views`` table."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    def increment(self, service: str, user: str) -> int:
        """Record one view and return the new total."""
        # Second attempt covers a concurrent insert of the same first view
        for attempt in range(2):
            try:
                with self.db.get_session() as session:
                    if not self._bump(session, service, user):
                        session.add(ProfileView(service=service, username=user, count=1))
                        session.flush()
                    return self._read(session, service, user)
            except IntegrityError as e:
                if attempt == 1:
                    raise CountUpdateError(
                        f"failed to record view for {service}/{user}: {e}"
                    ) from e
            except SQLAlchemyError as e:
                raise CountUpdateError(f"failed to record view for {service}/{user}: {e}") from e
        raise CountUpdateError(f"failed to record view for {service}/{user}")

    def get(self, service: str, user: str) -> int:
        """Current total, 0 when the user has never been viewed."""
        with self.db.get_session() as session:
            return self._read(session, service, user)

    def _bump(self, session: Session, service: str, user: str) -> bool:
        result = session.execute(
            update(ProfileView)
            .where(ProfileView.service == service, ProfileView.username == user)
            .values(count=ProfileView.count + 1)
        )
        return result.rowcount > 0

    def _read(self, session: Session, service: str, user: str) -> int:
        count = session.execute(
            select(ProfileView.count).where(
                ProfileView.service == service, ProfileView.username == user
            )
        ).scalar_one_or_none()
        return int(count or 0)
