"""Table persistence with atomic writes and rotating backups."""

import json
import logging
import os
import shutil
import time
from pathlib import Path

from .constants import BACKUP_INTERVAL_SECONDS, MAX_RECENT_BACKUPS
from .spans import dump_context_ranges, load_context_ranges
from .tables import TABLES, ConversationTables

logger = logging.getLogger(__name__)


class TablePersistence:
    """Handles table persistence with atomic writes and backup rotation."""

    def __init__(self, path: Path):
        self.path = path
        self.backup_marker = path.with_suffix(".last_backup")

    def load(self) -> ConversationTables:
        """Load tables from disk; a missing or unreadable file yields empty tables."""
        if not self.path.exists():
            return ConversationTables()

        try:
            with open(self.path) as f:
                data = json.load(f)

            tables = {name: data.get(name, {}) for name in TABLES}

            # context_ranges is stored as a JSON-encoded column
            for message in tables["messages"].values():
                message["context_ranges"] = load_context_ranges(message.get("context_ranges"))

            result = ConversationTables(tables)
            counts = result.counts()
            logger.info(
                f"Loaded tables from {self.path}: {counts['conversations']} conversations, "
                f"{counts['nodes']} nodes, {counts['edges']} edges"
            )
            return result

        except Exception as e:
            logger.error(f"Failed to load tables from {self.path}: {e}")
            return ConversationTables()

    def save(self, tables: ConversationTables) -> bool:
        """
        Save tables to disk with atomic write.
        Returns True on success, False on failure.
        """
        temp_path = self.path.with_suffix(".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)

            data = tables.as_dict()
            data["messages"] = {
                key: {**message, "context_ranges": dump_context_ranges(message.get("context_ranges"))}
                for key, message in tables.messages.items()
            }

            with open(temp_path, "w") as f:
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())

            # Atomic rename (POSIX guarantees atomicity)
            temp_path.replace(self.path)

            logger.debug(f"Saved tables to {self.path}")
            return True

        except Exception as e:
            logger.error(f"Failed to save tables to {self.path}: {e}")
            if temp_path.exists():
                temp_path.unlink()
            return False

    def maybe_backup(self) -> bool:
        """
        Rotate backups if enough time has passed.
        Returns True if a backup was created.
        """
        if not self.path.exists():
            return False

        if self.backup_marker.exists():
            last_backup_time = self.backup_marker.stat().st_mtime
            if time.time() - last_backup_time < BACKUP_INTERVAL_SECONDS:
                return False

        self._rotate_backups()
        self.backup_marker.touch()
        return True

    def backup_path(self, index: int) -> Path:
        return self.path.with_suffix(f"{self.path.suffix}.bak.{index}")

    def _rotate_backups(self):
        """Shift .bak.N files up by one (oldest drops off) and copy the current file to .bak.1."""
        for i in range(MAX_RECENT_BACKUPS - 1, 0, -1):
            old_backup = self.backup_path(i)
            if old_backup.exists():
                shutil.copy2(old_backup, self.backup_path(i + 1))

        shutil.copy2(self.path, self.backup_path(1))
        logger.debug(f"Created backup: {self.backup_path(1)}")
