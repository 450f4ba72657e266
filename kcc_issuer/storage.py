import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, Optional, Protocol
from urllib.parse import quote

import psycopg

from kcc_issuer.config import Settings

logger = logging.getLogger(__name__)

REGISTERED = "registered"
DID_URI = "didURI"
AUTH_URL = "authURL"
PERMISSION = "permission"
BEARER_DID = "dwnBearerDid.json"

TRUE = "true"


class StateStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...


def is_flag_set(store: StateStore, key: str) -> bool:
    return store.get(key) == TRUE


class MemoryStateStore:
    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._items: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set(self, key: str, value: str) -> None:
        self._items[key] = str(value)


class FileStateStore:
    """Key/value pairs kept as one file per key inside a scratch directory.

    Keys are percent-encoded to form file names, so ``dwnBearerDid.json`` and
    keys containing slashes are both safe. The directory is created on the
    first write.
    """

    def __init__(self, directory):
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        return self.directory / quote(key, safe="")

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.is_file():
            return None
        return path.read_text(encoding="utf-8")

    def set(self, key: str, value: str) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        # readers see either the old or the new value, never a truncated file
        with tempfile.NamedTemporaryFile("w", encoding="utf-8", dir=self.directory,
                                         prefix=".tmp-", delete=False) as f:
            f.write(str(value))
        try:
            os.replace(f.name, self._path(key))
        except OSError:
            os.unlink(f.name)
            raise


class PostgresStateStore:
    def __init__(self, database_url: str):
        self.database_url = database_url
        self.init_state_table()

    def init_state_table(self):
        with psycopg.connect(self.database_url) as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    CREATE TABLE IF NOT EXISTS issuer_state (
                        key TEXT PRIMARY KEY,
                        value TEXT NOT NULL
                    )
                """)
                conn.commit()

    def get(self, key: str) -> Optional[str]:
        with psycopg.connect(self.database_url) as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT value FROM issuer_state WHERE key = %s", (key,))
                row = cur.fetchone()
                return row[0] if row else None

    def set(self, key: str, value: str) -> None:
        with psycopg.connect(self.database_url) as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    INSERT INTO issuer_state (key, value)
                    VALUES (%s, %s)
                    ON CONFLICT (key) DO UPDATE SET value = EXCLUDED.value
                """, (key, str(value)))
                conn.commit()


def open_state_store(settings: Settings) -> StateStore:
    if settings.database_url:
        logger.info("Using PostgreSQL state store")
        return PostgresStateStore(settings.database_url)
    logger.info("Using scratch directory state store at %s", settings.scratch_dir)
    return FileStateStore(settings.scratch_dir)
