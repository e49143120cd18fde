from fastapi import APIRouter
from app.api.admin import system

router = APIRouter()
router.include_router(system.router, prefix="/system", tags=["AdminSystem"])
