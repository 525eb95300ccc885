import logging

from fastapi import APIRouter, Request

logger = logging.getLogger(__name__)

router = APIRouter()

COMPONENTS = ("storage", "queue", "database")


@router.get("/health")
async def health_check(request: Request):
    """
    Health check endpoint for monitoring API status and component readiness.

    Pings the object store, the job queue and the metadata store. A failing
    component marks the service as degraded rather than failing the request.
    """
    state = request.app.state
    settings = state.settings

    health_status = {
        "status": "ok",
        "deployment_mode": settings.deployment_mode,
        "components": {"api": "ready"},
        "ready": False,
    }

    checks = {
        "storage": state.storage.ping,
        "queue": state.queue.ping,
        "database": state.metadata_store.ping,
    }
    for name in COMPONENTS:
        try:
            checks[name]()
            health_status["components"][name] = "ready"
        except Exception as e:
            logger.warning("Health check failed for %s: %s", name, e)
            health_status["components"][name] = f"error: {str(e)}"
            health_status["status"] = "degraded"

    health_status["ready"] = all(value == "ready" for value in health_status["components"].values())
    return health_status
