"""
Offer Analysis Projects Database Service
Port: 3001

Stores project documents and the advisory edit locks that guard them.
Documents are opaque JSON to this service; it only reads the summary fields.
"""
from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, Dict, Any, List
from datetime import datetime
import logging

from . import database
from .. import config

# Prometheus metrics
from prometheus_fastapi_instrumentator import Instrumentator

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Offer Analysis Projects API",
    description="Project document storage and edit locks for procurement offer analysis",
    version="1.0.0"
)

# Initialize Prometheus metrics
Instrumentator().instrument(app).expose(app)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ============== Pydantic Models ==============

class LockRequest(BaseModel):
    """Body of lock acquisition and heartbeat"""
    model_config = ConfigDict(populate_by_name=True)

    user_id: Optional[str] = Field(None, alias="userId", description="Opaque session id of the lock owner")


class ProjectSummary(BaseModel):
    id: str
    name: str
    marketRef: str
    lotAnalyzed: str
    updatedAt: str


class LockInfo(BaseModel):
    lockedBy: str
    lockedAt: str


def _require_user(payload: Optional[LockRequest]) -> str:
    user_id = payload.user_id if payload else None
    if not user_id:
        raise HTTPException(status_code=400, detail="userId is required")
    return user_id

# ============== Startup Event ==============

@app.on_event("startup")
async def startup():
    """Initialize database on startup"""
    await database.init_db()
    logger.info(f"✅ Offer analysis projects DB service started on port {config.PORT}")

# ============== Health Check ==============

@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": "projects-db",
        "version": "1.0.0",
        "timestamp": datetime.now().isoformat()
    }

# ============== Project Endpoints ==============

@app.get("/projects", response_model=List[ProjectSummary])
async def list_projects():
    """List project summaries, most recently saved first"""
    return await database.list_projects()

@app.get("/projects/{project_id}", response_model=Dict[str, Any])
async def get_project(project_id: str):
    """Get the full project document"""
    project = await database.get_project(project_id)
    if project is None:
        raise HTTPException(status_code=404, detail="Project not found")
    return project

@app.put("/projects/{project_id}", response_model=Dict[str, Any])
async def save_project(project_id: str, project: Dict[str, Any]):
    """Create or replace a project document"""
    body_id = project.get("id")
    if not body_id:
        raise HTTPException(status_code=400, detail="Project document must carry its id")
    if body_id != project_id:
        raise HTTPException(status_code=400, detail=f"Document id {body_id} does not match {project_id}")
    updated_at = await database.save_project(project_id, project)
    logger.info(f"💾 Saved project {project_id}")
    return {"ok": True, "updatedAt": updated_at}

@app.delete("/projects/{project_id}", response_model=Dict[str, Any])
async def delete_project(project_id: str):
    """Delete a project and its lock; deleting an unknown project succeeds"""
    deleted = await database.delete_project(project_id)
    if deleted:
        logger.info(f"🗑️ Deleted project {project_id}")
    return {"ok": True}

# ============== Lock Endpoints ==============

@app.get("/locks", response_model=Dict[str, LockInfo])
async def list_locks():
    """Live locks by project id; stale locks are evicted"""
    locks = await database.list_locks()
    return {project_id: lock.to_wire() for project_id, lock in locks.items()}

@app.post("/locks/{project_id}", response_model=Dict[str, Any])
async def acquire_lock(project_id: str, payload: Optional[LockRequest] = None):
    """Acquire (or re-acquire) the edit lock of a project"""
    user_id = _require_user(payload)
    acquired, lock = await database.acquire_lock(project_id, user_id)
    if not acquired:
        logger.info(f"🔒 Lock on {project_id} refused to {user_id}: held by {lock.locked_by}")
        raise HTTPException(
            status_code=409,
            detail={"error": "Project is locked", "lock": lock.to_wire()}
        )
    return {"ok": True, "lock": lock.to_wire()}

@app.delete("/locks/{project_id}", response_model=Dict[str, Any])
async def release_lock(
    project_id: str,
    user_id: Optional[str] = Query(None, alias="userId", description="Only release a lock held by this owner")
):
    """Release a lock; idempotent"""
    released = await database.release_lock(project_id, user_id)
    return {"ok": True, "released": released}

@app.post("/locks/{project_id}/heartbeat", response_model=Dict[str, Any])
async def heartbeat(project_id: str, payload: Optional[LockRequest] = None):
    """Renew a lock held by the caller"""
    user_id = _require_user(payload)
    lock = await database.heartbeat_lock(project_id, user_id)
    if lock is None:
        raise HTTPException(status_code=404, detail="Lock not found")
    return {"ok": True, "lock": lock.to_wire()}

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
