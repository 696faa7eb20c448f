"""
Flat-file persistence for mappings, migration state, and the SQL translation cache.

Layout under the storage directory::

    table_mappings.json           list of table mappings, keyed by source table id
    field_mappings.json           list of field mappings, keyed by source field id
    card_id_mapping.json          {"<source card id>": <target card id>}
    state/<key>.json              arbitrary JSON values
    translation_cache/<hash>.txt  translated SQL
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .models import FieldMapping, TableMapping

logger = logging.getLogger(__name__)

_SAFE_KEY = re.compile(r"^[A-Za-z0-9_.-]+$")


class FileMappingStore:
    def __init__(self, path):
        # type: (Union[str, Path]) -> None
        self.root = Path(path)
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # File helpers
    # ------------------------------------------------------------------

    def _read_json(self, path, default):
        # type: (Path, Any) -> Any
        if not path.exists():
            return default
        with open(str(path)) as f:
            return json.load(f)

    def _write_json(self, path, data):
        # type: (Path, Any) -> None
        self._write_text(path, json.dumps(data, indent=2, sort_keys=True))

    def _write_text(self, path, text):
        # type: (Path, str) -> None
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=".tmp-")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(text)
            os.replace(tmp, str(path))
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def _check_key(self, key):
        # type: (str) -> str
        if not _SAFE_KEY.match(key):
            raise ValueError("Invalid storage key: {!r}".format(key))
        return key

    # ------------------------------------------------------------------
    # Table mappings
    # ------------------------------------------------------------------

    @property
    def _table_path(self) -> Path:
        return self.root / "table_mappings.json"

    def get_table_mappings(self):
        # type: () -> List[TableMapping]
        with self._lock:
            rows = self._read_json(self._table_path, [])
        return [TableMapping.from_dict(r) for r in rows]

    def upsert_table_mapping(self, mapping):
        # type: (TableMapping) -> None
        self.upsert_table_mappings([mapping])

    def upsert_table_mappings(self, mappings):
        # type: (List[TableMapping]) -> None
        with self._lock:
            rows = self._read_json(self._table_path, [])
            by_id = {r["source_table_id"]: r for r in rows}
            for m in mappings:
                by_id[m.source_table_id] = m.to_dict()
            self._write_json(
                self._table_path, [by_id[k] for k in sorted(by_id)]
            )
        logger.debug("Upserted %d table mappings", len(mappings))

    # ------------------------------------------------------------------
    # Field mappings
    # ------------------------------------------------------------------

    @property
    def _field_path(self) -> Path:
        return self.root / "field_mappings.json"

    def get_field_mappings(self):
        # type: () -> List[FieldMapping]
        with self._lock:
            rows = self._read_json(self._field_path, [])
        return [FieldMapping.from_dict(r) for r in rows]

    def upsert_field_mapping(self, mapping):
        # type: (FieldMapping) -> None
        with self._lock:
            rows = self._read_json(self._field_path, [])
            by_id = {r["source_field_id"]: r for r in rows}
            by_id[mapping.source_field_id] = mapping.to_dict()
            self._write_json(
                self._field_path, [by_id[k] for k in sorted(by_id)]
            )

    # ------------------------------------------------------------------
    # Card id mapping
    # ------------------------------------------------------------------

    @property
    def _card_path(self) -> Path:
        return self.root / "card_id_mapping.json"

    def get_card_id_mappings(self):
        # type: () -> Dict[int, int]
        with self._lock:
            raw = self._read_json(self._card_path, {})
        return {int(k): int(v) for k, v in raw.items()}

    def get_card_id_mapping(self, source_card_id):
        # type: (int) -> Optional[int]
        return self.get_card_id_mappings().get(source_card_id)

    def set_card_id_mapping(self, source_card_id, target_card_id):
        # type: (int, int) -> None
        with self._lock:
            raw = self._read_json(self._card_path, {})
            raw[str(source_card_id)] = target_card_id
            self._write_json(self._card_path, raw)
        logger.info("Recorded card mapping %d -> %d", source_card_id, target_card_id)

    def delete_card_id_mapping(self, source_card_id):
        # type: (int) -> bool
        with self._lock:
            raw = self._read_json(self._card_path, {})
            if raw.pop(str(source_card_id), None) is None:
                return False
            self._write_json(self._card_path, raw)
        logger.info("Removed card mapping for card %d", source_card_id)
        return True

    # ------------------------------------------------------------------
    # Generic state
    # ------------------------------------------------------------------

    def get_state(self, key):
        # type: (str) -> Any
        path = self.root / "state" / "{}.json".format(self._check_key(key))
        with self._lock:
            return self._read_json(path, None)

    def set_state(self, key, value):
        # type: (str, Any) -> None
        path = self.root / "state" / "{}.json".format(self._check_key(key))
        with self._lock:
            self._write_json(path, value)

    # ------------------------------------------------------------------
    # Translation cache
    # ------------------------------------------------------------------

    def get_cached_translation(self, cache_key):
        # type: (str) -> Optional[str]
        path = self.root / "translation_cache" / "{}.txt".format(self._check_key(cache_key))
        if not path.exists():
            return None
        with open(str(path)) as f:
            return f.read()

    def put_cached_translation(self, cache_key, text):
        # type: (str, str) -> None
        path = self.root / "translation_cache" / "{}.txt".format(self._check_key(cache_key))
        self._write_text(path, text)
