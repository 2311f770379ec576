from fastapi import HTTPException, Request, Security
from fastapi.security.api_key import APIKeyHeader
from starlette.status import HTTP_403_FORBIDDEN

from .ingest import IngestionCoordinator
from .retrieval import RetrievalService
from .stats import StatsAggregator


api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def require_api_key(request: Request, api_key: str = Security(api_key_header)):
    settings = request.app.state.settings
    # header name is configurable; the security scheme above only documents the default
    api_key = request.headers.get(settings.API_KEY_HEADER, api_key)
    if not api_key or api_key != settings.API_KEY:
        raise HTTPException(status_code=HTTP_403_FORBIDDEN, detail="Could not validate credentials")
    return True


def get_coordinator(request: Request) -> IngestionCoordinator:
    return request.app.state.coordinator


def get_retrieval(request: Request) -> RetrievalService:
    return request.app.state.retrieval


def get_stats(request: Request) -> StatsAggregator:
    return request.app.state.stats
