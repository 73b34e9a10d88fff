from fastapi import APIRouter

from practice_web.models.responses import HealthResponse

router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthResponse, summary="Health check")
async def health_check() -> HealthResponse:
    """Simple liveness probe."""
    return HealthResponse()
