from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from guestpass.core.config import get_settings
from guestpass.db.session import get_db

router = APIRouter()
settings = get_settings()


@router.get("/health")
def health(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError:
        database = "unavailable"
    return {
        "status": "ok" if database == "ok" else "degraded",
        "database": database,
        "kioskDegradedMode": settings.KIOSK_DEGRADED_MODE,
        "environment": settings.ENVIRONMENT,
    }
