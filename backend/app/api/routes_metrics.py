import secrets

from fastapi import APIRouter, HTTPException, Request, Response

router = APIRouter()


def _authorize_scrape(request: Request) -> None:
    """Prod scrapes must send ``Authorization: Bearer <METRICS_TOKEN>``; query tokens are not honored."""
    app_settings = getattr(request.app.state, "app_settings", None)
    if app_settings is None or app_settings.app_env != "prod":
        return
    if not app_settings.metrics_token:
        raise HTTPException(status_code=500, detail="Metrics token misconfigured")
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not secrets.compare_digest(token.strip(), app_settings.metrics_token):
        raise HTTPException(status_code=401, detail="Unauthorized")


@router.get("/metrics")
async def metrics_endpoint(request: Request) -> Response:
    registry = getattr(request.app.state, "metrics", None)
    if registry is None or not registry.enabled:
        raise HTTPException(status_code=404, detail="Metrics disabled")
    _authorize_scrape(request)
    body, content_type = registry.render()
    return Response(content=body, media_type=content_type)
