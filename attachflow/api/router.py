from fastapi import APIRouter

from attachflow.features.compositions.api import router as compositions_router

api_router = APIRouter()
api_router.include_router(compositions_router)
