"""
Hiro - FastAPI Backend
REST API for contacts, pipelines, campaigns, Facebook sync and the LLM key pool.

Run: uvicorn hiro.api.app:app --reload --port 8000
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from hiro import config
from hiro.api.routers import api_keys, campaigns, contacts, cron, facebook, pipelines
from hiro.db import connection, models
from hiro.db.init_db import init_db
from hiro.logging_config import setup_logging


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    init_db(connection.DB_PATH)
    yield


app = FastAPI(
    title="Hiro",
    description="Messenger and Instagram CRM API with AI lead scoring and bulk campaigns.",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ─── ROUTERS ─────────────────────────────────────────────────
app.include_router(contacts.router)
app.include_router(pipelines.router)
app.include_router(campaigns.router)
app.include_router(facebook.router)
app.include_router(api_keys.router)
app.include_router(cron.router)


# ─── HEALTH CHECK ───────────────────────────────────────────────

@app.get("/api/health")
def health():
    try:
        return {
            "status": "healthy",
            "db_path": connection.DB_PATH,
            "tables": models.table_counts(),
            "config_errors": config.validate(),
        }
    except Exception as e:
        return JSONResponse(status_code=500, content={"status": "unhealthy", "error": str(e)})


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("hiro.api.app:app", host=config.API_HOST, port=config.API_PORT)
