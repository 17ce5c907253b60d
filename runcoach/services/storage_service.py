from __future__ import annotations

import json
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, TypeVar

import redis
from supabase import Client as SupabaseClient
from supabase import create_client

from ..config import Settings, load_settings
from ..errors import PersistenceError
from ..models import Roadmap, UserProfile, WorkoutReflection, WorkoutSession

logger = logging.getLogger(__name__)

T = TypeVar('T')

SESSIONS_TABLE = 'workout_sessions'
REFLECTIONS_TABLE = 'workout_reflections'
ROADMAPS_TABLE = 'roadmaps'
PROFILES_TABLE = 'profiles'

_PRIMARY_KEYS = {
    PROFILES_TABLE: 'user_id',
}


class StorageService:
    """Record store behind a small repository interface.

    Supabase tables are used when credentials are configured. Otherwise each
    table is a JSON document in ``STORAGE_DATA_DIR`` (mirrored into Redis when
    a Redis URL is set). Only equality filters, single-field ordering and a
    limit are supported so both backends behave the same.

    Failures are raised as :class:`PersistenceError`; callers decide whether
    to retry.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        supabase_client: Optional[SupabaseClient] = None,
        redis_client: Optional[Any] = None,
    ) -> None:
        settings = settings or load_settings()
        self._supabase: Optional[SupabaseClient] = supabase_client or self._init_supabase(settings)
        self._redis: Optional[Any] = redis_client or self._init_redis(settings)
        self._lock = threading.RLock()

        data_dir = Path(settings.data_dir).expanduser()
        data_dir.mkdir(parents=True, exist_ok=True)
        self._data_dir = data_dir.resolve()

    # -- generic record operations -------------------------------------

    def upsert(self, table: str, record: Mapping[str, Any], on_conflict: Optional[str] = None) -> Dict[str, Any]:
        key = on_conflict or self._primary_key(table)
        saved = dict(record)

        if self._supabase:
            try:
                self._supabase.table(table).upsert(saved, on_conflict=key).execute()
            except Exception as exc:
                logger.warning('%s.upsert_failed', table, exc_info=True)
                raise PersistenceError(f'Unable to save {table} record.') from exc
            return saved

        with self._lock:
            rows = self._load_table(table)
            for index, row in enumerate(rows):
                if row.get(key) == saved.get(key):
                    rows[index] = saved
                    break
            else:
                rows.append(saved)
            self._write_table(table, rows)
        return saved

    def get(self, table: str, filters: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        rows = self.list(table, filters, limit=1)
        return rows[0] if rows else None

    def list(
        self,
        table: str,
        filters: Optional[Mapping[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        filters = filters or {}

        if self._supabase:
            try:
                query = self._supabase.table(table).select('*')
                for column, value in filters.items():
                    query = query.eq(column, value)
                if order_by:
                    query = query.order(order_by, desc=descending)
                if limit:
                    query = query.limit(limit)
                response = query.execute()
            except Exception as exc:
                logger.warning('%s.list_failed', table, exc_info=True)
                raise PersistenceError(f'Unable to read {table} records.') from exc
            return [row for row in (response.data or []) if isinstance(row, dict)]

        with self._lock:
            rows = [row for row in self._load_table(table) if _matches(row, filters)]
        if order_by:
            # Rows without the ordering column go last in both directions.
            present = [row for row in rows if row.get(order_by) is not None]
            missing = [row for row in rows if row.get(order_by) is None]
            present.sort(key=lambda row: str(row[order_by]), reverse=descending)
            rows = present + missing
        if limit:
            rows = rows[:limit]
        return rows

    def delete(self, table: str, filters: Mapping[str, Any]) -> None:
        if not filters:
            raise ValueError('Refusing to delete without filters.')

        if self._supabase:
            try:
                query = self._supabase.table(table).delete()
                for column, value in filters.items():
                    query = query.eq(column, value)
                query.execute()
            except Exception as exc:
                logger.warning('%s.delete_failed', table, exc_info=True)
                raise PersistenceError(f'Unable to delete {table} records.') from exc
            return

        with self._lock:
            rows = [row for row in self._load_table(table) if not _matches(row, filters)]
            self._write_table(table, rows)

    # -- workout sessions and reflections ------------------------------

    def save_session(self, session: WorkoutSession) -> None:
        self.upsert(SESSIONS_TABLE, session.to_record())

    def get_session(self, session_id: str) -> Optional[WorkoutSession]:
        record = self.get(SESSIONS_TABLE, {'id': session_id})
        return _decode(SESSIONS_TABLE, WorkoutSession.from_record, record) if record else None

    def list_sessions(
        self,
        user_id: str,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[WorkoutSession]:
        """Sessions for ``user_id``, newest first, optionally starting at ``since``."""

        records = self.list(
            SESSIONS_TABLE,
            {'user_id': user_id},
            order_by='start_time',
            descending=True,
            limit=None if since else limit,
        )
        sessions = [_decode(SESSIONS_TABLE, WorkoutSession.from_record, record) for record in records]
        if since is not None:
            sessions = [item for item in sessions if item.start_time and item.start_time >= since]
            if limit:
                sessions = sessions[:limit]
        return sessions

    def save_reflection(self, reflection: WorkoutReflection) -> None:
        self.upsert(REFLECTIONS_TABLE, reflection.to_record(), on_conflict='workout_session_id')

    def get_reflection_for_session(self, session_id: str) -> Optional[WorkoutReflection]:
        """Reflection for a session, or ``None`` when it was never stored."""

        record = self.get(REFLECTIONS_TABLE, {'workout_session_id': session_id})
        return _decode(REFLECTIONS_TABLE, WorkoutReflection.from_record, record) if record else None

    # -- roadmaps and profiles -----------------------------------------

    def save_roadmap(self, roadmap: Roadmap) -> None:
        self.upsert(ROADMAPS_TABLE, roadmap.to_record())

    def replace_roadmap(self, roadmap: Roadmap) -> None:
        """Store ``roadmap``, then drop the user's other roadmaps.

        A failed save leaves the previous roadmap in place.
        """

        self.save_roadmap(roadmap)
        for record in self.list(ROADMAPS_TABLE, {'user_id': roadmap.user_id}):
            if record.get('id') != roadmap.id:
                self.delete(ROADMAPS_TABLE, {'id': record.get('id')})

    def fetch_roadmap(self, user_id: str) -> Optional[Roadmap]:
        records = self.list(
            ROADMAPS_TABLE,
            {'user_id': user_id},
            order_by='updated_at',
            descending=True,
            limit=1,
        )
        return _decode(ROADMAPS_TABLE, Roadmap.from_record, records[0]) if records else None

    def save_profile(self, profile: UserProfile) -> None:
        self.upsert(PROFILES_TABLE, profile.to_record())

    def fetch_profile(self, user_id: str) -> UserProfile:
        record = self.get(PROFILES_TABLE, {'user_id': user_id})
        return UserProfile.from_record(user_id, record)

    # -- backends ------------------------------------------------------

    def _init_supabase(self, settings: Settings) -> Optional[SupabaseClient]:
        if not settings.supabase_url or not settings.supabase_key:
            logger.info("Supabase disabled (missing env)")
            return None
        try:
            return create_client(settings.supabase_url, settings.supabase_key)
        except Exception as exc:
            logger.warning("Supabase init failed: %s", exc)
            return None

    def _init_redis(self, settings: Settings) -> Optional[Any]:
        if not settings.redis_url:
            return None
        try:
            return redis.from_url(settings.redis_url, decode_responses=True)
        except Exception:  # pragma: no cover - network dependent
            logger.warning('Redis init failed', exc_info=True)
            return None

    def _load_table(self, table: str) -> List[Dict[str, Any]]:
        data = self._read_json(self._table_path(table))
        if isinstance(data, list):
            return [row for row in data if isinstance(row, dict)]
        return []

    def _write_table(self, table: str, rows: List[Dict[str, Any]]) -> None:
        try:
            self._write_json(self._table_path(table), rows)
        except (OSError, TypeError, ValueError) as exc:
            logger.warning('%s.write_failed', table, exc_info=True)
            raise PersistenceError(f'Unable to save {table} records.') from exc

    def _write_json(self, path: Path, data) -> None:
        if self._redis is not None:
            try:
                self._redis.set(self._redis_key(path), json.dumps(data))
                return
            except Exception:
                logger.warning('Redis write failed; using filesystem fallback', exc_info=True)

        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data, indent=2))

    def _read_json(self, path: Path):
        if self._redis is not None:
            try:
                raw = self._redis.get(self._redis_key(path))
            except Exception:
                logger.warning('Redis read failed; using filesystem fallback', exc_info=True)
            else:
                if raw is not None:
                    if isinstance(raw, bytes):
                        raw = raw.decode('utf-8')
                    try:
                        return json.loads(raw)
                    except json.JSONDecodeError:
                        logger.warning('Redis value was not valid JSON for %s', path.name)

        if not path.exists():
            return None
        try:
            return json.loads(path.read_text())
        except json.JSONDecodeError:
            logger.warning('Stored table %s is not valid JSON; treating it as empty', path.name)
            return None
        except OSError as exc:
            raise PersistenceError(f'Unable to read {path.name}.') from exc

    def _redis_key(self, path: Path) -> str:
        return f'runcoach:{path.name}'

    def _table_path(self, table: str) -> Path:
        safe = table.replace('/', '_')
        return self._data_dir / f'{safe}.json'

    @staticmethod
    def _primary_key(table: str) -> str:
        return _PRIMARY_KEYS.get(table, 'id')


def _decode(table: str, factory: Callable[[Mapping[str, Any]], T], record: Mapping[str, Any]) -> T:
    try:
        return factory(record)
    except (KeyError, TypeError, ValueError) as exc:
        logger.warning('%s.invalid_record id=%s', table, record.get('id'), exc_info=True)
        raise PersistenceError(f'Stored {table} record is invalid.') from exc


def _matches(row: Mapping[str, Any], filters: Mapping[str, Any]) -> bool:
    return all(row.get(column) == value for column, value in filters.items())
