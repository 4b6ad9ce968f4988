"""
The cache document.

A single JSON file is both the indexer's database and the body the dashboard
loads. Writes are atomic (temp file + `os.replace`) and guarded against
replacing populated event sets with empty ones.
"""

from __future__ import annotations

import copy
import json
import logging
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .constants import BACKUP_KEEP
from .utils import ensure_dir, read_json, utc_now_iso, write_json_atomic

log = logging.getLogger(__name__)


class DataLossError(RuntimeError):
    pass


class CacheFormatError(ValueError):
    pass


DEFAULT_DOCUMENT: Dict[str, Any] = {
    "stakingData": {
        "createEvents": [],
        "stakeEvents": [],
        "rewardPoolData": [],
        "metadata": {},
    },
    "buyProcessData": {
        "dailyData": [],
        "eventCounts": {},
        "metadata": {},
    },
    "lpPositions": [],
    "totals": {},
    "metadata": {},
    "lastUpdated": None,
}

# Collections that must never go from populated to empty in a single write.
GUARDED_COLLECTIONS = (
    ("stakingData", "createEvents"),
    ("stakingData", "stakeEvents"),
    ("stakingData", "rewardPoolData"),
    ("buyProcessData", "dailyData"),
    ("lpPositions",),
)


def default_document() -> Dict[str, Any]:
    return copy.deepcopy(DEFAULT_DOCUMENT)


def _fill_defaults(doc: Dict[str, Any], defaults: Dict[str, Any]) -> None:
    for k, v in defaults.items():
        if k not in doc or doc[k] is None and v is not None:
            doc[k] = copy.deepcopy(v)
        elif isinstance(v, dict) and isinstance(doc[k], dict):
            _fill_defaults(doc[k], v)


def load_cache(path: Path) -> Dict[str, Any]:
    if not path.exists():
        log.info("no cache at %s, starting from an empty document", path)
        return default_document()
    try:
        doc = read_json(path)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise CacheFormatError(f"{path}: not valid JSON ({e})") from e
    if not isinstance(doc, dict):
        raise CacheFormatError(f"{path}: top level must be an object, got {type(doc).__name__}")
    _fill_defaults(doc, DEFAULT_DOCUMENT)
    return doc


def _collection(doc: Dict[str, Any], keys: tuple) -> List[Any]:
    cur: Any = doc
    for k in keys:
        if not isinstance(cur, dict):
            return []
        cur = cur.get(k)
    return cur if isinstance(cur, list) else []


def check_data_loss(previous: Optional[Dict[str, Any]], doc: Dict[str, Any]) -> None:
    if not previous:
        return
    for keys in GUARDED_COLLECTIONS:
        before = len(_collection(previous, keys))
        after = len(_collection(doc, keys))
        name = ".".join(keys)
        if before and not after:
            raise DataLossError(f"refusing to replace {before} {name} entries with none")
        if after < before:
            log.warning("%s shrinks from %d to %d entries", name, before, after)


def save_cache(path: Path, doc: Dict[str, Any], *, previous: Optional[Dict[str, Any]] = None) -> None:
    if previous is None and path.exists():
        try:
            previous = load_cache(path)
        except CacheFormatError as e:
            log.warning("existing cache unreadable, skipping data-loss check: %s", e)
    check_data_loss(previous, doc)
    doc["lastUpdated"] = utc_now_iso()
    write_json_atomic(path, doc)


def default_backup_dir(path: Path) -> Path:
    return path.parent / "backups"


def list_backups(path: Path, backup_dir: Optional[Path] = None) -> List[Path]:
    backup_dir = backup_dir or default_backup_dir(path)
    if not backup_dir.exists():
        return []
    # Timestamped names sort chronologically.
    return sorted(backup_dir.glob(f"{path.stem}-*{path.suffix}"))


def backup_cache(path: Path, *, backup_dir: Optional[Path] = None, keep: int = BACKUP_KEEP) -> Optional[Path]:
    if not path.exists():
        return None
    backup_dir = backup_dir or default_backup_dir(path)
    ensure_dir(backup_dir)
    stamp = datetime.now(tz=timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
    dest = backup_dir / f"{path.stem}-{stamp}{path.suffix}"
    shutil.copy2(path, dest)
    log.info("backed up %s -> %s", path, dest)

    backups = list_backups(path, backup_dir)
    for old in backups[: max(0, len(backups) - keep)]:
        old.unlink()
        log.debug("pruned backup %s", old)
    return dest


def restore_latest_backup(path: Path, *, backup_dir: Optional[Path] = None) -> Optional[Path]:
    backups = list_backups(path, backup_dir)
    if not backups:
        log.warning("no backups to restore for %s", path)
        return None
    latest = backups[-1]
    tmp = path.with_name(path.name + ".restore")
    shutil.copy2(latest, tmp)
    tmp.replace(path)
    log.info("restored %s from %s", path, latest)
    return latest
