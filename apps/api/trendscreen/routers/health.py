from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from trendscreen.database import get_db
import structlog

router = APIRouter()
logger = structlog.get_logger()


@router.get("/health")
async def health_check(request: Request, db: AsyncSession = Depends(get_db)):
    status = {
        "status": "ok",
        "version": request.app.state.settings.VERSION,
        "database": "unknown",
        "latest_trade_date": None,
    }

    try:
        latest = (await db.execute(text("SELECT MAX(date) FROM daily_prices"))).scalar()
        status["database"] = "connected"
        status["latest_trade_date"] = latest.isoformat() if latest else None
    except (SQLAlchemyError, OSError) as e:
        logger.error("Health check failed for database", error=str(e))
        status["database"] = "disconnected"
        status["status"] = "degraded"

    return status
