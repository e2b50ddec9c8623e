# farmops/api/routers/healthz.py
from fastapi import APIRouter

from farmops.schemas.common import OkResponse

router = APIRouter(prefix="/healthz", tags=["health"])


@router.get(
    "",
    response_model=OkResponse,
    summary="Liveness check",
    description="Always 200 while the process serves requests; touches no storage.",
)
async def healthz():
    return {"ok": True}
