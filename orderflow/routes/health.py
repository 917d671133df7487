from fastapi import APIRouter

from orderflow.utils.clock import utcnow

router = APIRouter(tags=["health"])


@router.get("/health")
def health_check():
    """Liveness check."""
    return {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
    }
