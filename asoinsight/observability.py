"""Prometheus instrumentation for the FastAPI app."""
import logging
from functools import lru_cache

from fastapi import FastAPI
from prometheus_fastapi_instrumentator import Instrumentator

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def _instrumentator() -> Instrumentator:
    """Shared instance so repeated setup (tests, reloads) does not re-register metrics."""
    return Instrumentator(excluded_handlers=["/health", "/ready", "/metrics"])


def setup_instrumentation(app: FastAPI) -> None:
    """Collect HTTP metrics for ``app`` and expose them with the pipeline metrics at ``/metrics``."""
    instrumentator = _instrumentator()
    instrumentator.instrument(app)
    instrumentator.expose(app, include_in_schema=False, endpoint="/metrics")
    logger.info("Prometheus metrics enabled at /metrics")
