"""
Persisted client coupon state.

The applied codes are stored as a JSON array of strings under one key.
Absent, malformed or partial content loads as an empty list; loading
never raises.
"""

import json
import logging
import threading
from pathlib import Path
from typing import Dict, List, MutableMapping, Optional

from .models import normalize_code

logger = logging.getLogger(__name__)


class JsonFileBackend(MutableMapping):
    """Key/value strings kept in a single JSON file (localStorage stand-in)."""

    def __init__(self, path: str):
        self.path = Path(path)
        self._lock = threading.RLock()
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def _read(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        except (OSError, ValueError) as e:
            logger.warning(f"Unreadable storage file {self.path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: Dict[str, str]) -> None:
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(data, ensure_ascii=False), encoding="utf-8")
        tmp.replace(self.path)

    def __getitem__(self, key: str) -> str:
        with self._lock:
            return self._read()[key]

    def __setitem__(self, key: str, value: str) -> None:
        with self._lock:
            data = self._read()
            data[key] = value
            self._write(data)

    def __delitem__(self, key: str) -> None:
        with self._lock:
            data = self._read()
            del data[key]
            self._write(data)

    def __iter__(self):
        return iter(self._read())

    def __len__(self) -> int:
        return len(self._read())


class CouponCodeStore:
    """Ordered list of applied coupon codes under a single storage key."""

    def __init__(self, backend: Optional[MutableMapping] = None, key: str = "applied_coupons"):
        self.backend = backend if backend is not None else {}
        self.key = key

    def load(self) -> List[str]:
        try:
            raw = self.backend.get(self.key)
        except Exception as e:
            logger.warning(f"Failed to read coupon storage: {e}")
            return []
        if raw is None:
            return []

        try:
            data = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
        except ValueError:
            logger.warning(f"Discarding malformed coupon storage under '{self.key}'")
            return []

        if not isinstance(data, list):
            return []

        codes: List[str] = []
        for value in data:
            if not isinstance(value, str):
                continue
            code = normalize_code(value)
            if code and code not in codes:
                codes.append(code)
        return codes

    def save(self, codes: List[str]) -> None:
        self.backend[self.key] = json.dumps(list(codes))

    def clear(self) -> None:
        self.save([])
