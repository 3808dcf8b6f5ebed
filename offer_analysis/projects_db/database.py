"""
SQLite Database Management for Offer Analysis Projects and Edit Locks
"""
import aiosqlite
import json
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional, List, Dict, Any, Tuple

from .. import config
from ..locking import (
    LockRecord,
    can_acquire,
    can_heartbeat,
    can_release,
    format_timestamp,
    parse_timestamp,
    partition_stale,
    utcnow,
)

logger = logging.getLogger(__name__)

DATABASE_PATH = config.DATABASE_PATH


def _connect():
    # Autocommit mode: transactions are opened explicitly with BEGIN IMMEDIATE
    return aiosqlite.connect(DATABASE_PATH, isolation_level=None)


@asynccontextmanager
async def _transaction():
    """Write transaction: the database write lock is taken before the first read"""
    async with _connect() as db:
        db.row_factory = aiosqlite.Row
        await db.execute('BEGIN IMMEDIATE')
        try:
            yield db
        except BaseException:
            await db.execute('ROLLBACK')
            raise
        await db.execute('COMMIT')


async def init_db():
    """Initialize database with required tables"""
    directory = os.path.dirname(DATABASE_PATH)
    if directory:
        os.makedirs(directory, exist_ok=True)
    async with _connect() as db:
        await db.execute('PRAGMA journal_mode = WAL')

        # Projects table - one opaque JSON document per project
        await db.execute('''
            CREATE TABLE IF NOT EXISTS projects (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        ''')

        # Locks table - at most one advisory edit lock per project
        await db.execute('''
            CREATE TABLE IF NOT EXISTS locks (
                project_id TEXT PRIMARY KEY,
                locked_by TEXT NOT NULL,
                locked_at TEXT NOT NULL
            )
        ''')

        await db.execute('CREATE INDEX IF NOT EXISTS idx_projects_updated ON projects(updated_at)')
    logger.info(f"📁 Database initialized at {DATABASE_PATH}")


# ============== Projects ==============

def _summary(data: Dict[str, Any], updated_at: str) -> Dict[str, Any]:
    info = data.get('info') or {}
    lots = data.get('lots') or []
    lot_analyzed = info.get('lotAnalyzed')
    if lot_analyzed is None and lots:
        index = data.get('currentLotIndex') or 0
        lot = lots[index] if 0 <= index < len(lots) else lots[0]
        lot_analyzed = lot.get('lotAnalyzed')
    return {
        'id': data.get('id'),
        'name': info.get('name') or 'Sans titre',
        'marketRef': info.get('marketRef') or '',
        'lotAnalyzed': lot_analyzed or '',
        'updatedAt': updated_at,
    }


async def list_projects() -> List[Dict[str, Any]]:
    """Summaries of every project, most recently saved first"""
    async with _connect() as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute('SELECT id, data, updated_at FROM projects ORDER BY updated_at DESC')
        rows = await cursor.fetchall()
        return [_summary(json.loads(row['data']), row['updated_at']) for row in rows]


async def get_project(project_id: str) -> Optional[Dict[str, Any]]:
    """Full project document, or None"""
    async with _connect() as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute('SELECT data FROM projects WHERE id = ?', (project_id,))
        row = await cursor.fetchone()
        if row:
            return json.loads(row['data'])
        return None


async def save_project(project_id: str, data: Dict[str, Any], now: Optional[datetime] = None) -> str:
    """Create or replace a project document, return the server-side updatedAt"""
    updated_at = format_timestamp(now or utcnow())
    async with _transaction() as db:
        await db.execute('''
            INSERT INTO projects (id, data, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET data = excluded.data, updated_at = excluded.updated_at
        ''', (project_id, json.dumps(data, ensure_ascii=False), updated_at))
    return updated_at


async def delete_project(project_id: str) -> bool:
    """Delete project and its lock"""
    async with _transaction() as db:
        await db.execute('DELETE FROM locks WHERE project_id = ?', (project_id,))
        cursor = await db.execute('DELETE FROM projects WHERE id = ?', (project_id,))
        return cursor.rowcount > 0


# ============== Locks ==============

def _lock_from_row(row) -> LockRecord:
    return LockRecord(
        project_id=row['project_id'],
        locked_by=row['locked_by'],
        locked_at=parse_timestamp(row['locked_at']),
    )


async def _get_lock(db, project_id: str) -> Optional[LockRecord]:
    cursor = await db.execute(
        'SELECT project_id, locked_by, locked_at FROM locks WHERE project_id = ?', (project_id,)
    )
    row = await cursor.fetchone()
    return _lock_from_row(row) if row else None


async def _write_lock(db, project_id: str, owner: str, now: datetime) -> LockRecord:
    await db.execute('''
        INSERT INTO locks (project_id, locked_by, locked_at) VALUES (?, ?, ?)
        ON CONFLICT(project_id) DO UPDATE SET locked_by = excluded.locked_by, locked_at = excluded.locked_at
    ''', (project_id, owner, format_timestamp(now)))
    return LockRecord(project_id=project_id, locked_by=owner, locked_at=now)


async def list_locks(now: Optional[datetime] = None) -> Dict[str, LockRecord]:
    """Live locks by project id; stale ones are deleted on the way"""
    now = now or utcnow()
    async with _transaction() as db:
        cursor = await db.execute('SELECT project_id, locked_by, locked_at FROM locks')
        rows = await cursor.fetchall()
        live, stale = partition_stale([_lock_from_row(row) for row in rows], now)
        for lock in stale:
            await db.execute(
                'DELETE FROM locks WHERE project_id = ? AND locked_at = ?',
                (lock.project_id, format_timestamp(lock.locked_at)),
            )
    if stale:
        logger.info(f"🧹 Evicted {len(stale)} stale lock(s): {[l.project_id for l in stale]}")
    return {lock.project_id: lock for lock in live}


async def acquire_lock(
    project_id: str, owner: str, now: Optional[datetime] = None
) -> Tuple[bool, LockRecord]:
    """
    Compare-and-swap acquisition.

    Returns (True, new lock) on success, (False, current lock) on conflict.
    """
    now = now or utcnow()
    async with _transaction() as db:
        existing = await _get_lock(db, project_id)
        if not can_acquire(existing, owner, now):
            return False, existing
        if existing is not None and existing.locked_by != owner:
            logger.info(f"🔓 Taking over stale lock on {project_id} from {existing.locked_by}")
        return True, await _write_lock(db, project_id, owner, now)


async def release_lock(project_id: str, owner: Optional[str] = None) -> bool:
    """Idempotent; with an owner, another owner's lock is left alone"""
    async with _transaction() as db:
        existing = await _get_lock(db, project_id)
        if not can_release(existing, owner):
            return False
        await db.execute('DELETE FROM locks WHERE project_id = ?', (project_id,))
        return True


async def heartbeat_lock(
    project_id: str, owner: str, now: Optional[datetime] = None
) -> Optional[LockRecord]:
    """Refresh the owner's lock; None when the owner holds no lock on the project"""
    now = now or utcnow()
    async with _transaction() as db:
        existing = await _get_lock(db, project_id)
        if not can_heartbeat(existing, owner):
            return None
        return await _write_lock(db, project_id, owner, now)
