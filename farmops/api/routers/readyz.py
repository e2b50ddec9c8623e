from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from farmops.api.deps import get_health_service
from farmops.schemas.common import OkResponse
from farmops.services.health import HealthService

router = APIRouter(prefix="/readyz", tags=["health"])


def _unavailable(code: str, message: str, detail: str | None = None) -> JSONResponse:
    payload = {"error": {"code": code, "message": message}}
    if detail:
        payload["error"]["detail"] = detail
    return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=payload)


@router.get(
    "",
    response_model=OkResponse,
    summary="Readiness check",
    description="503 until migrations finish, then a SELECT 1 round-trip to the database.",
)
async def readyz(request: Request, health: HealthService = Depends(get_health_service)):
    migrations = request.app.state.migrations
    if not migrations.completed:
        return _unavailable(
            "migrations_pending", "Database migrations are still running", migrations.error
        )
    try:
        return await health.ok()
    except (SQLAlchemyError, OSError) as exc:
        return _unavailable("database_unavailable", "Database is not reachable", str(exc))
