"""
Async HTTP client of the projects database service.

Maps the service's status codes onto the error taxonomy:
404 -> NotFound, 409 -> LockConflict, 400/422 -> InvalidInput.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from . import config
from .document import ProjectDocument
from .errors import InvalidInput, LockConflict, NotFound
from .locking import LockRecord, parse_timestamp

logger = logging.getLogger(__name__)


def _detail(response: httpx.Response) -> Any:
    try:
        data = response.json()
    except ValueError:
        return response.text
    return data.get("detail", data) if isinstance(data, dict) else data


def _lock_from_wire(project_id: str, data: Dict[str, str]) -> LockRecord:
    return LockRecord(
        project_id=project_id,
        locked_by=data["lockedBy"],
        locked_at=parse_timestamp(data["lockedAt"]),
    )


class ProjectRepository:
    """Project documents and edit locks, over HTTP"""

    def __init__(
        self,
        base_url: str = config.API_BASE_URL,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = config.HTTP_TIMEOUT_SECONDS,
    ):
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self) -> "ProjectRepository":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def _request(self, method: str, url: str, project_id: Optional[str] = None, **kwargs) -> httpx.Response:
        try:
            response = await self.client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            logger.error(f"⏱️ Projects API timeout on {method} {url}: {str(e)}")
            raise
        except httpx.HTTPError as e:
            logger.error(f"❌ Projects API request failed on {method} {url}: {type(e).__name__}: {str(e)}")
            raise

        if response.status_code == 404:
            raise NotFound(str(_detail(response)))
        if response.status_code == 409:
            lock = _detail(response)["lock"]
            raise LockConflict(project_id, lock["lockedBy"], parse_timestamp(lock["lockedAt"]))
        if response.status_code in (400, 422):
            raise InvalidInput(str(_detail(response)))
        response.raise_for_status()
        return response

    # ============== Projects ==============

    async def list_projects(self) -> List[Dict[str, Any]]:
        response = await self._request("GET", "/projects")
        return response.json()

    async def load(self, project_id: str) -> ProjectDocument:
        response = await self._request("GET", f"/projects/{project_id}", project_id)
        return ProjectDocument.from_document(response.json())

    async def save(self, document: ProjectDocument) -> str:
        """Full-document save (last write wins); returns the server updatedAt"""
        response = await self._request(
            "PUT", f"/projects/{document.id}", document.id, json=document.to_document()
        )
        document.updated_at = response.json()["updatedAt"]
        return document.updated_at

    async def delete(self, project_id: str) -> None:
        await self._request("DELETE", f"/projects/{project_id}", project_id)

    # ============== Locks ==============

    async def list_locks(self) -> Dict[str, LockRecord]:
        response = await self._request("GET", "/locks")
        return {pid: _lock_from_wire(pid, data) for pid, data in response.json().items()}

    async def acquire_lock(self, project_id: str, owner: str) -> LockRecord:
        response = await self._request(
            "POST", f"/locks/{project_id}", project_id, json={"userId": owner}
        )
        return _lock_from_wire(project_id, response.json()["lock"])

    async def release_lock(self, project_id: str, owner: Optional[str] = None) -> None:
        params = {"userId": owner} if owner else None
        try:
            await self._request("DELETE", f"/locks/{project_id}", project_id, params=params)
        except NotFound:
            pass  # already gone

    async def heartbeat(self, project_id: str, owner: str) -> LockRecord:
        response = await self._request(
            "POST", f"/locks/{project_id}/heartbeat", project_id, json={"userId": owner}
        )
        return _lock_from_wire(project_id, response.json()["lock"])
