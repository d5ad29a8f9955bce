"""Key/value persistence for module settings.

One :class:`SettingsStore` front end with swappable backends: in-memory,
a JSON file, or a SQL table.  Every operation runs under a re-entrant lock so
concurrent requests never interleave read-modify-write cycles.
"""

import json
import logging
import os
import secrets
import tempfile
import threading
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import String, Text, column, create_engine, inspect, select, table
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column

logger = logging.getLogger(__name__)


class SettingsBackend:
    def load(self) -> Dict[str, Any]:
        raise NotImplementedError

    def put(self, key: str, value: Any) -> None:
        raise NotImplementedError

    def remove(self, key: str) -> None:
        raise NotImplementedError


class MemorySettingsBackend(SettingsBackend):
    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, Any] = dict(initial or {})

    def load(self) -> Dict[str, Any]:
        return dict(self._data)

    def put(self, key: str, value: Any) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileSettingsBackend(SettingsBackend):
    """Settings kept in a single JSON object on disk.

    Writes go to a temporary file in the same directory followed by
    ``os.replace`` so readers never observe a half-written file.
    """

    def __init__(self, path: str):
        self.path = path

    def load(self) -> Dict[str, Any]:
        if not os.path.exists(self.path):
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Settings file {self.path} does not contain a JSON object.")
        return data

    def _write(self, data: Dict[str, Any]) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".settings-", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, sort_keys=True)
            os.replace(tmp_path, self.path)
        except Exception:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def put(self, key: str, value: Any) -> None:
        data = self.load()
        data[key] = value
        self._write(data)

    def remove(self, key: str) -> None:
        data = self.load()
        if key in data:
            del data[key]
            self._write(data)


class _SettingsBase(DeclarativeBase):
    pass


class SettingRow(_SettingsBase):
    __tablename__ = "erecht24_settings"
    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    value_json: Mapped[str] = mapped_column(Text)


class SqlSettingsBackend(SettingsBackend):
    def __init__(self, database_url: str):
        self.engine = create_engine(database_url)
        _SettingsBase.metadata.create_all(self.engine)

    def load(self) -> Dict[str, Any]:
        with Session(self.engine) as db:
            rows = db.scalars(select(SettingRow)).all()
            return {row.key: json.loads(row.value_json) for row in rows}

    def put(self, key: str, value: Any) -> None:
        with Session(self.engine) as db, db.begin():
            row = db.get(SettingRow, key)
            if row is None:
                db.add(SettingRow(key=key, value_json=json.dumps(value)))
            else:
                row.value_json = json.dumps(value)

    def remove(self, key: str) -> None:
        with Session(self.engine) as db, db.begin():
            row = db.get(SettingRow, key)
            if row is not None:
                db.delete(row)


class SettingsStore:
    def __init__(self, backend: SettingsBackend):
        self.backend = backend
        self._lock = threading.RLock()

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            value = self.backend.load().get(key)
        return default if value is None else value

    def set(self, key: str, value: Any) -> bool:
        with self._lock:
            try:
                self.backend.put(key, value)
                return True
            except Exception as exc:
                logger.error("Error setting module setting '%s': %s", key, exc)
                return False

    def delete(self, key: str) -> bool:
        with self._lock:
            try:
                self.backend.remove(key)
                return True
            except Exception as exc:
                logger.error("Error deleting module setting '%s': %s", key, exc)
                return False

    def all(self) -> Dict[str, Any]:
        with self._lock:
            return self.backend.load()

    def migrate_legacy(self, rows: Iterable[Tuple[str, Any]]) -> int:
        """Import ``(setting_name, setting_value)`` rows from the legacy config table.

        Keys that already hold a value and empty legacy values are left alone.
        Returns the number of imported settings.
        """
        imported = 0
        with self._lock:
            current = self.backend.load()
            for name, value in rows:
                if value in (None, "") or current.get(name) not in (None, ""):
                    continue
                if self.set(name, value):
                    imported += 1
        if imported:
            logger.info("Migrated %d settings from legacy configuration", imported)
        return imported

    def ensure_webhook_secret(self) -> Optional[str]:
        """Generate and store a webhook secret if none exists yet.

        Returns the new secret, or ``None`` when one was already present.
        """
        with self._lock:
            if self.get("webhook_secret"):
                return None
            secret = generate_webhook_secret()
            if not self.set("webhook_secret", secret):
                return None
        logger.info("Webhook secret auto-generated")
        return secret


LEGACY_TABLE = "erecht24_config"


def read_legacy_rows(database_url: str, table_name: str = LEGACY_TABLE) -> List[Tuple[str, Any]]:
    """Return ``(setting_name, setting_value)`` rows from the legacy config table.

    A missing table yields no rows; read errors are logged and yield no rows.
    """
    engine = create_engine(database_url)
    try:
        if not inspect(engine).has_table(table_name):
            return []
        legacy = table(table_name, column("setting_name"), column("setting_value"))
        with engine.connect() as conn:
            rows = conn.execute(select(legacy.c.setting_name, legacy.c.setting_value)).all()
        return [(name, value) for name, value in rows]
    except SQLAlchemyError as exc:
        logger.error("Error reading legacy configuration: %s", exc)
        return []
    finally:
        engine.dispose()


def generate_webhook_secret() -> str:
    """Return a fresh 64-hex-character webhook secret."""
    return secrets.token_hex(32)


def build_backend(kind: str, *, settings_file: str, database_url: str) -> SettingsBackend:
    if kind == "memory":
        return MemorySettingsBackend()
    if kind == "file":
        return JsonFileSettingsBackend(settings_file)
    if kind == "sql":
        return SqlSettingsBackend(database_url)
    raise ValueError(f"Unknown settings backend '{kind}'. Use memory, file, or sql.")
