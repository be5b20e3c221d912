from fastapi import APIRouter, Request, status

router = APIRouter(prefix="/health", tags=["health"])


@router.get("", status_code=status.HTTP_200_OK)
async def healthcheck(request: Request) -> dict[str, str]:
    """Liveness check naming the running service."""

    return {"status": "ok", "service": request.app.state.settings.app_name}
