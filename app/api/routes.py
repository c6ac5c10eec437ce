from fastapi import APIRouter
from app.api.routes_health import router as health_router
from app.api.routes_handshakes import router as handshakes_router
from app.api.routes_pipelines import router as pipelines_router
from app.api.routes_nodes import router as nodes_router

router = APIRouter()
router.include_router(health_router, tags=["health"])
router.include_router(handshakes_router, tags=["handshakes"])
router.include_router(pipelines_router, tags=["pipelines"])
router.include_router(nodes_router, tags=["nodes"])
