import logging

from fastapi import FastAPI

from parking_sync.config import settings
from .db import init_db
from .router_sync import router as sync_router

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

app = FastAPI(title=settings.APP_NAME, version=settings.VERSION)
app.include_router(sync_router)

@app.on_event("startup")
async def on_startup():
    await init_db()

@app.get("/health")
async def health():
    return {"ok": True}
