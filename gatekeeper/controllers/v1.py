from fastapi import APIRouter

from . import accounts, admin, blocks, gate, sessions, usage

router = APIRouter(prefix="/v1")
router.include_router(gate.router)
router.include_router(sessions.router)
router.include_router(usage.router)
router.include_router(blocks.router)
# internal tier sync from the platform
router.include_router(accounts.router)
router.include_router(admin.router)
