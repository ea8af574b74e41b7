"""SQLite store for ContextOpt.

Tables:
- archives: Archived section records (append-only)
- analyses: Analysis/optimization history per project
- rules: Custom rule configurations per project
"""

import json
import logging
import os
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

import aiosqlite

from .archiver import ArchiveContent
from .engine import ContextAnalysis
from .rules import BaseRule, load_rules

logger = logging.getLogger("contextopt.db")

# Default cache directory
DEFAULT_CACHE_DIR = Path(os.environ.get("CONTEXTOPT_CACHE_DIR", "~/.cache/contextopt")).expanduser()
DB_PATH = DEFAULT_CACHE_DIR / "contextopt.db"


def get_db_path() -> Path:
    """Get the database path, ensuring the directory exists."""
    db_path = Path(os.environ.get("CONTEXTOPT_DB_PATH", str(DB_PATH))).expanduser()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return db_path


SCHEMA = """
-- Archived sections; rows are never updated or deleted
CREATE TABLE IF NOT EXISTS archives (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_dir TEXT NOT NULL,
    source_file TEXT NOT NULL,
    archive_file TEXT NOT NULL,
    archive_ref TEXT NOT NULL,
    section_name TEXT NOT NULL,
    category TEXT NOT NULL,
    original_lines INTEGER NOT NULL,
    original_tokens INTEGER NOT NULL,
    reason TEXT NOT NULL,
    archived_at TEXT NOT NULL,
    archived_content TEXT NOT NULL,
    summary TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_archives_project ON archives(project_dir);
CREATE INDEX IF NOT EXISTS idx_archives_ref ON archives(archive_ref);

CREATE TRIGGER IF NOT EXISTS archives_no_update BEFORE UPDATE ON archives
BEGIN
    SELECT RAISE(ABORT, 'archives are append-only');
END;

CREATE TRIGGER IF NOT EXISTS archives_no_delete BEFORE DELETE ON archives
BEGIN
    SELECT RAISE(ABORT, 'archives are append-only');
END;

-- Analysis history
CREATE TABLE IF NOT EXISTS analyses (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_dir TEXT NOT NULL,
    source_file TEXT NOT NULL,
    total_lines INTEGER NOT NULL,
    total_tokens INTEGER NOT NULL,
    issues_count INTEGER NOT NULL,
    estimated_savings INTEGER NOT NULL,
    optimization_score INTEGER NOT NULL,
    recommended_strategy TEXT NOT NULL,
    applied_strategy TEXT,
    tokens_saved INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_analyses_project ON analyses(project_dir);

-- Custom rules, one row per (project, rule id)
CREATE TABLE IF NOT EXISTS rules (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_dir TEXT NOT NULL,
    rule_id TEXT NOT NULL,
    config TEXT NOT NULL,  -- JSON rule
    updated_at TEXT NOT NULL DEFAULT (datetime('now')),
    UNIQUE(project_dir, rule_id)
);
"""


async def init_db(db_path: Path | None = None) -> None:
    """Initialize the database with schema."""
    db_path = db_path or get_db_path()
    async with aiosqlite.connect(db_path) as db:
        await db.executescript(SCHEMA)
        await db.commit()
    logger.info(f"Database initialized at {db_path}")


def init_db_sync(db_path: Path | None = None) -> None:
    """Synchronous version of init_db for scripts."""
    db_path = db_path or get_db_path()
    with sqlite3.connect(db_path) as db:
        db.executescript(SCHEMA)
        db.commit()
    print(f"Database initialized at {db_path}")


@dataclass
class StoredArchive:
    """An archive row."""

    id: int
    project_dir: str
    archive: ArchiveContent
    created_at: str


def _archive_from_row(row: aiosqlite.Row) -> StoredArchive:
    return StoredArchive(
        id=row["id"],
        project_dir=row["project_dir"],
        archive=ArchiveContent(
            source_file=row["source_file"],
            archive_file=row["archive_file"],
            archive_ref=row["archive_ref"],
            section_name=row["section_name"],
            category=row["category"],
            original_lines=row["original_lines"],
            original_tokens=row["original_tokens"],
            reason=row["reason"],
            archived_at=datetime.fromisoformat(row["archived_at"]),
            archived_content=row["archived_content"],
            summary=row["summary"],
        ),
        created_at=row["created_at"],
    )


class ArchiveStore:
    """Async database interface for archives, analysis history and rules."""

    def __init__(self, db_path: Path | None = None):
        self.db_path = db_path or get_db_path()

    async def init(self) -> None:
        await init_db(self.db_path)

    async def put_archive(self, archive: ArchiveContent, project_dir: str) -> int:
        """Store an archive. Returns its id."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                INSERT INTO archives
                (project_dir, source_file, archive_file, archive_ref, section_name, category,
                 original_lines, original_tokens, reason, archived_at, archived_content, summary)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    project_dir,
                    archive.source_file,
                    archive.archive_file,
                    archive.archive_ref,
                    archive.section_name,
                    archive.category,
                    archive.original_lines,
                    archive.original_tokens,
                    archive.reason,
                    archive.archived_at.isoformat(),
                    archive.archived_content,
                    archive.summary,
                ),
            )
            await db.commit()
            return cursor.lastrowid

    async def get_archive(self, archive_id: int) -> StoredArchive | None:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM archives WHERE id = ?", (archive_id,))
            row = await cursor.fetchone()
            if row:
                return _archive_from_row(row)
            return None

    async def get_latest_archive(self, project_dir: str, archive_ref: str) -> StoredArchive | None:
        """Get the most recent archive for a ref in a project."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                """
                SELECT * FROM archives
                WHERE project_dir = ? AND archive_ref = ?
                ORDER BY id DESC
                LIMIT 1
                """,
                (project_dir, archive_ref),
            )
            row = await cursor.fetchone()
            if row:
                return _archive_from_row(row)
            return None

    async def list_archives(self, project_dir: str, limit: int = 50) -> list[StoredArchive]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                """
                SELECT * FROM archives
                WHERE project_dir = ?
                ORDER BY id DESC
                LIMIT ?
                """,
                (project_dir, limit),
            )
            rows = await cursor.fetchall()
            return [_archive_from_row(row) for row in rows]

    async def record_analysis(
        self,
        project_dir: str,
        source_file: str,
        analysis: ContextAnalysis,
        applied_strategy: str | None = None,
        tokens_saved: int = 0,
    ) -> int:
        """Record an analysis (and optionally the optimization that followed)."""
        summary = analysis.summary
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                INSERT INTO analyses
                (project_dir, source_file, total_lines, total_tokens, issues_count,
                 estimated_savings, optimization_score, recommended_strategy,
                 applied_strategy, tokens_saved)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    project_dir,
                    source_file,
                    summary.total_lines,
                    summary.total_tokens,
                    summary.issues_count,
                    summary.estimated_savings,
                    analysis.optimization_score,
                    analysis.recommended_strategy,
                    applied_strategy,
                    tokens_saved,
                ),
            )
            await db.commit()
            return cursor.lastrowid

    async def get_analysis_history(self, project_dir: str, limit: int = 20) -> list[dict[str, Any]]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                """
                SELECT * FROM analyses
                WHERE project_dir = ?
                ORDER BY id DESC
                LIMIT ?
                """,
                (project_dir, limit),
            )
            rows = await cursor.fetchall()
            return [dict(row) for row in rows]

    async def put_rule(self, project_dir: str, rule: BaseRule) -> None:
        """Store or replace a custom rule."""
        config = rule.model_dump(mode="json")
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO rules (project_dir, rule_id, config, updated_at)
                VALUES (?, ?, ?, datetime('now'))
                ON CONFLICT(project_dir, rule_id) DO UPDATE SET
                    config = excluded.config,
                    updated_at = datetime('now')
                """,
                (project_dir, rule.id, json.dumps(config)),
            )
            await db.commit()

    async def get_rules(self, project_dir: str) -> tuple[BaseRule, ...]:
        """Custom rules for a project, validated on the way out."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT config FROM rules WHERE project_dir = ? ORDER BY rule_id",
                (project_dir,),
            )
            rows = await cursor.fetchall()
        return load_rules([json.loads(row["config"]) for row in rows])

    async def delete_rule(self, project_dir: str, rule_id: str) -> bool:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "DELETE FROM rules WHERE project_dir = ? AND rule_id = ?",
                (project_dir, rule_id),
            )
            await db.commit()
            return cursor.rowcount > 0


if __name__ == "__main__":
    # Initialize database when run directly
    init_db_sync()
