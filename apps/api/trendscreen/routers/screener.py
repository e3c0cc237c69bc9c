from fastapi import APIRouter, Depends, HTTPException, Request
import structlog

from trendscreen.exceptions import InvalidFilterError, ScreenerQueryError
from trendscreen.schemas.screener import ScreenerResponse, parse_filters
from trendscreen.services.screener import ScreenerService

router = APIRouter()
logger = structlog.get_logger()


def get_screener_service(request: Request) -> ScreenerService:
    state = request.app.state
    return ScreenerService(state.session_factory, state.retry_policy)


@router.get("/stocks", response_model=ScreenerResponse)
async def screen_stocks(request: Request, service: ScreenerService = Depends(get_screener_service)):
    """
    Symbols matching every activated filter on the latest trade date.
    Query parameters use the camelCase filter names (minMcap, revenueGrowthQuarters, ...).
    """
    try:
        filters = parse_filters(dict(request.query_params))
    except InvalidFilterError as e:
        logger.info("Rejected screener filters", details=e.details)
        raise HTTPException(
            status_code=e.status_code,
            detail={"error": e.message, "code": e.error_code, "details": e.details},
        )

    try:
        return await service.run(filters)
    except ScreenerQueryError as e:
        raise HTTPException(status_code=e.status_code, detail={"error": e.message, "code": e.error_code})
