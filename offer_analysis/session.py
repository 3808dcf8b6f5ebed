"""
Editing session: the lock coordinator composed with document load / save.

A session acquires the project's edit lock, loads the document, and keeps
the lock alive with a periodic heartbeat until it is closed. The lock is
advisory: ``open(..., force=True)`` proceeds without it.
"""

import asyncio
from datetime import timedelta
import logging
from typing import Optional
import uuid

import httpx

from . import config
from .document import ProjectDocument
from .errors import InvalidInput, LockConflict, NotFound
from .locking import LOCK_TTL, LockRecord
from .repository import ProjectRepository

logger = logging.getLogger(__name__)

HEARTBEAT_INTERVAL = timedelta(minutes=config.HEARTBEAT_INTERVAL_MINUTES)


def new_session_id() -> str:
    """Opaque owner token for the locks of one session"""
    return f"user-{uuid.uuid4().hex[:8]}"


class LockHeartbeat:
    """Background task renewing one lock every ``interval``"""

    def __init__(
        self,
        repository: ProjectRepository,
        project_id: str,
        owner: str,
        interval: timedelta = HEARTBEAT_INTERVAL,
        ttl: timedelta = LOCK_TTL,
    ):
        if interval >= ttl:
            raise ValueError(f"Heartbeat interval {interval} must be shorter than the lock TTL {ttl}")
        self.repository = repository
        self.project_id = project_id
        self.owner = owner
        self.interval = interval
        self.lost = False
        self.beats = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if not self.running:
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            # The loop already died; stopping must not block the lock release
            logger.error(f"❌ Heartbeat on {self.project_id} had failed: {type(e).__name__}: {str(e)}")
            self.lost = True
        self._task = None

    async def beat(self) -> Optional[LockRecord]:
        """One renewal. Returns None and marks the lock lost when it is gone."""
        try:
            lock = await self.repository.heartbeat(self.project_id, self.owner)
        except NotFound:
            logger.warning(f"⚠️ Lock on {self.project_id} lost by {self.owner}")
            self.lost = True
            return None
        self.beats += 1
        return lock

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval.total_seconds())
            try:
                lock = await self.beat()
            except httpx.HTTPError as e:
                # The next beat still lands inside the TTL
                logger.warning(f"⚠️ Heartbeat on {self.project_id} failed, retrying: {type(e).__name__}: {str(e)}")
                continue
            if lock is None:
                return


class EditingSession:
    """One open project document for one owner"""

    def __init__(
        self,
        repository: ProjectRepository,
        owner: Optional[str] = None,
        heartbeat_interval: timedelta = HEARTBEAT_INTERVAL,
    ):
        self.repository = repository
        self.owner = owner or new_session_id()
        self.heartbeat_interval = heartbeat_interval
        self.document: Optional[ProjectDocument] = None
        self.lock: Optional[LockRecord] = None
        self.heartbeat: Optional[LockHeartbeat] = None

    @property
    def is_open(self) -> bool:
        return self.document is not None

    @property
    def holds_lock(self) -> bool:
        return self.lock is not None and not (self.heartbeat and self.heartbeat.lost)

    async def open(self, project_id: str, force: bool = False) -> ProjectDocument:
        """
        Lock and load a project. A lock held by someone else raises
        ``LockConflict`` unless ``force`` is set, in which case the document
        is opened without the lock.
        """
        if self.is_open:
            await self.close()
        try:
            self.lock = await self.repository.acquire_lock(project_id, self.owner)
        except LockConflict as conflict:
            if not force:
                raise
            logger.warning(
                f"⚠️ Opening {project_id} without its lock, held by {conflict.locked_by} since {conflict.locked_at}"
            )
            self.lock = None

        try:
            self.document = await self.repository.load(project_id)
        except Exception:
            await self._release(project_id)
            raise

        self._start_heartbeat(project_id)
        return self.document

    async def create(self, document: Optional[ProjectDocument] = None) -> ProjectDocument:
        """Save a new project and open it under this session's lock"""
        if self.is_open:
            await self.close()
        document = document or ProjectDocument()
        await self.repository.save(document)
        self.lock = await self.repository.acquire_lock(document.id, self.owner)
        self.document = document
        self._start_heartbeat(document.id)
        return document

    async def save(self) -> str:
        if self.document is None:
            raise InvalidInput("No project is open", code="NO_OPEN_PROJECT")
        return await self.repository.save(self.document)

    async def close(self) -> None:
        if self.heartbeat is not None:
            await self.heartbeat.stop()
            self.heartbeat = None
        if self.document is not None:
            await self._release(self.document.id)
        self.document = None

    async def __aenter__(self) -> "EditingSession":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def _start_heartbeat(self, project_id: str) -> None:
        if self.lock is None:
            return
        self.heartbeat = LockHeartbeat(
            self.repository, project_id, self.owner, interval=self.heartbeat_interval
        )
        self.heartbeat.start()

    async def _release(self, project_id: str) -> None:
        if self.lock is None:
            return
        # Owner filter: never drops a lock someone else took over
        await self.repository.release_lock(project_id, self.owner)
        self.lock = None
