"""
OVERWATCH STATE STORE
Single JSON document, read whole at cycle start, replaced whole at cycle end

Writes go to a temp file in the same directory followed by os.replace, so a
reader (the static page, the patch engine) never sees a half-written file.
"""

import os
import json
import shutil
import logging
import tempfile
from pathlib import Path
from typing import Dict, Any, Union

from overwatch.shared.validation import sanitize_for_json

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def read_json(path: PathLike) -> Any:
    with open(path, encoding="utf-8") as f:
        return json.load(f)


def atomic_write_text(path: PathLike, text: str) -> None:
    """Write text next to `path`, then rename it into place"""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def write_json(path: PathLike, data: Any) -> None:
    """Pretty-printed, strict JSON (NaN/Infinity become null)"""
    text = json.dumps(sanitize_for_json(data), indent=2, ensure_ascii=False, allow_nan=False)
    atomic_write_text(path, text + "\n")


def backup_file(source: PathLike, backup: PathLike) -> bool:
    """Copy `source` to `backup`; False when there is nothing to back up"""
    source = Path(source)
    if not source.exists():
        return False
    shutil.copyfile(source, backup)
    logger.info(f"Backed up {source.name} -> {Path(backup).name}")
    return True


def restore_file(backup: PathLike, target: PathLike) -> bool:
    """Copy a backup back over its target"""
    backup = Path(backup)
    if not backup.exists():
        logger.error(f"No backup at {backup} to restore from")
        return False
    shutil.copyfile(backup, target)
    logger.warning(f"Restored {Path(target).name} from {backup.name}")
    return True


class StateStore:
    """The persisted state blob (dashboard-data.json)"""

    def __init__(self, path: PathLike):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> Dict[str, Any]:
        """Previous state, or {} when missing or unreadable"""
        if not self.path.exists():
            logger.info(f"No existing state at {self.path}, starting fresh")
            return {}
        try:
            data = read_json(self.path)
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read existing {self.path.name}: {e}")
            return {}
        if not isinstance(data, dict):
            logger.warning(f"{self.path.name} does not hold a JSON object, ignoring it")
            return {}
        return data

    def save(self, state: Dict[str, Any]) -> None:
        write_json(self.path, state)
        logger.info(f"Wrote {self.path}")
