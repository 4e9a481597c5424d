from fastapi import APIRouter

from app.api.auth import router as auth_router
from app.api.chats import router as chats_router
from app.api.messages import router as messages_router
from app.api.scheduled import router as scheduled_router
from app.api.users import profile_router
from app.api.users import router as users_router

router = APIRouter()

router.include_router(auth_router, prefix="/auth", tags=["auth"])
router.include_router(chats_router)
router.include_router(messages_router)
router.include_router(scheduled_router)
router.include_router(users_router)
router.include_router(profile_router)


@router.get("/", tags=["root"])
def read_root() -> dict[str, str]:
    return {"message": "Welcome to the BaatKare API"}
