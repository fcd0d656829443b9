"""JSON file persistence for oracle configurations."""

from __future__ import annotations

import json
import logging
import os
import shutil
import threading
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import pydantic

from src.oracle.errors import OracleNotFoundError, ValidationError
from src.oracle.models import (
    DEFAULT_PRICE_MULTIPLIER,
    DEFAULT_UPDATE_INTERVAL_MINUTES,
    OracleConfig,
)

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = Path("data/oracles.json")

# legacy key -> canonical key
LEGACY_ALIASES = {
    "updateInterval": "updateIntervalMinutes",
    "multiplier": "priceMultiplier",
    "walletAddress": "address",
}

_FIELD_ALIASES = {
    name: (field.alias or name) for name, field in OracleConfig.model_fields.items()
}


class OracleConfigStore:
    """
    Oracle configurations keyed by oracle id, stored in a single JSON file.

    Writes go to a temporary file that replaces the target atomically; the
    previous file is kept as ``<name>.bak``.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else DEFAULT_CONFIG_FILE
        self._lock = threading.RLock()

    # Raw file access
    def _read_raw(self) -> Dict[str, Dict[str, Any]]:
        if not self.path.exists():
            return {}
        try:
            with self.path.open("r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (ValueError, OSError) as exc:
            logger.error("Error loading oracle configs from %s: %s", self.path, exc)
            return {}
        if not isinstance(data, dict):
            logger.error("Oracle config file %s does not contain an object", self.path)
            return {}
        return data

    def _write_raw(self, records: Mapping[str, Dict[str, Any]]) -> None:
        if not self.path.parent.exists():
            self.path.parent.mkdir(parents=True, exist_ok=True)
        if self.path.exists():
            shutil.copyfile(self.path, self.path.with_name(self.path.name + ".bak"))
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as fh:
            json.dump(dict(records), fh, indent=2)
        os.replace(tmp_path, self.path)

    @staticmethod
    def _parse(oracle_id: str, record: Dict[str, Any]) -> OracleConfig:
        try:
            return OracleConfig.model_validate({**record, "id": oracle_id})
        except pydantic.ValidationError as exc:
            raise ValidationError(f"Invalid configuration for oracle '{oracle_id}': {exc}", oracle_id)

    # Store interface
    def load(self) -> Dict[str, OracleConfig]:
        """Return every valid configuration. Invalid records are logged and skipped."""
        with self._lock:
            raw = self._read_raw()
        configs: Dict[str, OracleConfig] = {}
        for oracle_id, record in raw.items():
            try:
                configs[oracle_id] = self._parse(oracle_id, _apply_aliases(record))
            except ValidationError as exc:
                logger.warning("Skipping oracle %s: %s", oracle_id, exc)
        return configs

    def save(self, configs: Mapping[str, OracleConfig]) -> bool:
        with self._lock:
            try:
                self._write_raw({oracle_id: cfg.to_record() for oracle_id, cfg in configs.items()})
            except OSError as exc:
                logger.error("Error saving oracle configs to %s: %s", self.path, exc)
                return False
        return True

    def get(self, oracle_id: str) -> Optional[OracleConfig]:
        with self._lock:
            record = self._read_raw().get(oracle_id)
        if record is None:
            return None
        return self._parse(oracle_id, _apply_aliases(record))

    def update(self, oracle_id: str, updates: Mapping[str, Any]) -> bool:
        """
        Merge ``updates`` (model field names or camelCase keys) into a record.

        Raises:
            OracleNotFoundError: If no record exists for ``oracle_id``
        """
        with self._lock:
            raw = self._read_raw()
            if oracle_id not in raw:
                raise OracleNotFoundError(oracle_id)
            current = self._parse(oracle_id, _apply_aliases(raw[oracle_id]))
            merged = {**current.to_record(), **_to_record_keys(updates)}
            raw[oracle_id] = self._parse(oracle_id, merged).to_record()
            try:
                self._write_raw(raw)
            except OSError as exc:
                logger.error("Error saving oracle configs to %s: %s", self.path, exc)
                return False
        return True

    # Migration
    def backfill(self, oracle_id: str) -> OracleConfig:
        """Persist defaults for legacy fields of one oracle; no-op when complete."""
        with self._lock:
            raw = self._read_raw()
            if oracle_id not in raw:
                raise OracleNotFoundError(oracle_id)
            record, changed = _migrate_record(oracle_id, raw[oracle_id])
            config = self._parse(oracle_id, record)
            if changed:
                raw[oracle_id] = config.to_record()
                self._write_raw(raw)
                logger.info("Backfilled legacy fields for oracle %s", oracle_id)
        return config

    def migrate(self) -> List[str]:
        """
        One-time pass rewriting legacy records into the canonical shape.

        Returns:
            Ids of the records that changed
        """
        with self._lock:
            raw = self._read_raw()
            migrated: List[str] = []
            for oracle_id, record in raw.items():
                new_record, changed = _migrate_record(oracle_id, record)
                if changed:
                    raw[oracle_id] = new_record
                    migrated.append(oracle_id)
            if migrated:
                self._write_raw(raw)
        if migrated:
            logger.info("Migrated %d oracle config(s): %s", len(migrated), ", ".join(migrated))
        return migrated


def _apply_aliases(record: Dict[str, Any]) -> Dict[str, Any]:
    result = dict(record)
    for legacy, canonical in LEGACY_ALIASES.items():
        if legacy in result:
            value = result.pop(legacy)
            if result.get(canonical) is None:
                result[canonical] = value
    return result


def _migrate_record(oracle_id: str, record: Dict[str, Any]) -> tuple[Dict[str, Any], bool]:
    result = _apply_aliases(record)
    if "name" in result and result["name"] == oracle_id:
        result.pop("name")
    result.setdefault("id", oracle_id)
    if result.get("priceMultiplier") is None:
        result["priceMultiplier"] = DEFAULT_PRICE_MULTIPLIER
    if result.get("updateIntervalMinutes") is None:
        result["updateIntervalMinutes"] = DEFAULT_UPDATE_INTERVAL_MINUTES
    if not result.get("derivationPath"):
        result["derivationPath"] = oracle_id
    return result, result != record


def _to_record_keys(updates: Mapping[str, Any]) -> Dict[str, Any]:
    record: Dict[str, Any] = {}
    for key, value in updates.items():
        alias = _FIELD_ALIASES.get(key, key)
        if hasattr(value, "isoformat"):
            value = value.isoformat()
        record[alias] = value
    return record
