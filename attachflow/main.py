from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api import api_router
from .core.config import get_settings
from .core.logging import configure_logging
from .db.session import async_engine
from .features.compositions.service import get_composition_registry, get_storage

settings = get_settings()


@asynccontextmanager
async def lifespan(_: FastAPI):
    configure_logging()
    try:
        yield
    finally:
        await get_composition_registry().discard_all(storage=get_storage())
        await async_engine.dispose()


app = FastAPI(title="attachflow API", docs_url="/api/docs", lifespan=lifespan)
app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.frontend_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/")
async def read_root() -> dict:
    return {"status": "ok", "service": "attachflow"}


@app.get("/health")
async def health_check() -> dict:
    return {"healthy": True}
