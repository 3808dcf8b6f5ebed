# Projects Database Service
# FastAPI + aiosqlite storage for project documents and edit locks
