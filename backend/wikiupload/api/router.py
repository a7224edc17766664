from __future__ import annotations

from fastapi import APIRouter

from wikiupload.api.routes import auth, files, upload

api_router = APIRouter()
api_router.include_router(auth.router)
api_router.include_router(upload.router)
api_router.include_router(files.router)
