from fastapi import APIRouter
from .ws import router as ws_router
from .messages import router as messages_router

router = APIRouter()
router.include_router(ws_router, prefix='/ws', tags=['ws'])
router.include_router(messages_router, prefix='/messages', tags=['messages'])
