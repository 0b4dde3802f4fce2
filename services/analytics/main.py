from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from typing import Optional
import uuid

from asoinsight.config import settings
from asoinsight.database import close_databases
from asoinsight.errors import AnalyticsError, create_error_response, status_code_for
from asoinsight.health import setup_health_endpoints
from asoinsight.logging_config import setup_logging
from asoinsight.observability import setup_instrumentation
from asoinsight.service import AnalyticsService, create_analytics_service

app = FastAPI(title="ASO Analytics")
setup_instrumentation(app)
logger = setup_logging(settings.service_name)
setup_health_endpoints(app, service_name=settings.service_name)

# Built on first use so importing the app does not need warehouse credentials
_service: Optional[AnalyticsService] = None


def get_analytics_service() -> AnalyticsService:
    global _service
    if _service is None:
        _service = create_analytics_service()
    return _service


@app.on_event("shutdown")
async def shutdown():
    """Flush pending audit writes and close connections."""
    global _service
    if _service is not None:
        await _service.aclose()
        _service = None
    await close_databases()


@app.exception_handler(AnalyticsError)
async def analytics_error_handler(request: Request, exc: AnalyticsError):
    request_id = getattr(request.state, "request_id", None) or str(uuid.uuid4())
    return JSONResponse(status_code=status_code_for(exc), content=create_error_response(request_id, exc))


async def _serve(request: Request, service: AnalyticsService, endpoint: str) -> dict:
    request_id = str(uuid.uuid4())
    request.state.request_id = request_id

    try:
        body = await request.json()
    except ValueError:
        # Rejected as InvalidRequest once the caller is authenticated
        body = None

    return await service.handle(
        request.headers.get("authorization"),
        body,
        request_id=request_id,
        endpoint=endpoint,
    )


@app.post("/v1/aso-data")
async def aso_data(request: Request, service: AnalyticsService = Depends(get_analytics_service)):
    """Aggregated ASO metrics for the caller's authorized apps."""
    return await _serve(request, service, "/v1/aso-data")


@app.post("/bigquery-aso-data")
async def bigquery_aso_data(request: Request, service: AnalyticsService = Depends(get_analytics_service)):
    """Path used by dashboard builds that predate ``/v1/aso-data``."""
    return await _serve(request, service, "/bigquery-aso-data")
