from routes.health import router as health_router
from routes.workflow import router as workflow_router

__all__ = ["health_router", "workflow_router"]
