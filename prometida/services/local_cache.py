from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Optional

import redis

logger = logging.getLogger(__name__)


class LocalCache:
    """Device-side persistence for the theme and fallback collections.

    Values are JSON documents keyed by name. Redis is used when a URL is
    configured, otherwise one file per key under ``data_dir``.
    """

    def __init__(self, data_dir: Path, redis_url: Optional[str] = None) -> None:
        self._redis: Optional[Any] = self._init_redis(redis_url)

        data_dir = Path(data_dir).expanduser()
        data_dir.mkdir(parents=True, exist_ok=True)
        self._data_dir = data_dir.resolve()

    def load(self, name: str, default: Any = None) -> Any:
        data = self._read_json(self._path(name))
        if data is None:
            return default
        return data

    def save(self, name: str, data: Any) -> None:
        self._write_json(self._path(name), data)

    def delete(self, name: str) -> None:
        path = self._path(name)
        if self._redis is not None:
            try:
                self._redis.delete(self._redis_key(path))
                return
            except Exception:
                logger.warning('Redis delete failed; falling back to filesystem', exc_info=True)
        if path.exists():
            path.unlink(missing_ok=True)

    # --- Private helpers -------------------------------------------------

    def _init_redis(self, redis_url: Optional[str]) -> Optional[Any]:
        if not redis_url:
            return None
        try:
            return redis.from_url(redis_url, decode_responses=True)
        except Exception:  # pragma: no cover - network dependent
            logger.warning('Redis init failed; using filesystem cache', exc_info=True)
            return None

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
            return None

    def _redis_key(self, path: Path) -> str:
        return f'prometida:{path.name}'

    def _path(self, name: str) -> Path:
        safe = name.replace('/', '_')
        return self._data_dir / f'{safe}.json'
