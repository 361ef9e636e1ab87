# app/modules/router.py
from fastapi import APIRouter
from app.modules.docauthoring.api.router import v1 as docauthoring_router

router = APIRouter()
router.include_router(docauthoring_router)
