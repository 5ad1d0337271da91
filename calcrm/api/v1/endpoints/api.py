from fastapi import APIRouter

from calcrm.api.v1.endpoints import presence, realtime, record_locks
from calcrm.api.v1.endpoints.entities import create_entity_router
from calcrm.services.entity_registry import ENTITY_CONFIG

api_router = APIRouter()

# Coordination controllers
api_router.include_router(record_locks.router, prefix="/locks", tags=["Coordination | Locks"])
api_router.include_router(presence.router, prefix="/presence", tags=["Coordination | Presence"])
api_router.include_router(realtime.router, prefix="/realtime", tags=["Coordination | Realtime"])

# Versioned business entities, one router per registered type
for cfg in ENTITY_CONFIG.values():
    api_router.include_router(create_entity_router(cfg), prefix=f"/entities/{cfg.entity_type}")
