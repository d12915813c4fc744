# hospital_app/routers/health.py
import logging

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import crud, schemas
from ..config import get_settings
from ..database import get_db
from ..security import require_admin

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/health",
    tags=["Health Checks"],
    responses={404: {"description": "Not found"}},
)


@router.get("", response_model=schemas.HealthResponse)
def liveness(db: Session = Depends(get_db)):
    settings = get_settings()
    try:
        db.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError as e:
        logger.error(f"Health check database probe failed: {e}")
        database = "unavailable"
    return schemas.HealthResponse(
        status="ok" if database == "ok" else "degraded",
        app=settings.app_name,
        version=settings.app_version,
        database=database,
    )


@router.get("/consistency-check", response_model=schemas.ConsistencyReport, dependencies=[Depends(require_admin)])
def check_system_consistency(db: Session = Depends(get_db)):
    """
    Cross-checks slot claims against appointments.
    Accessible only by admin users.
    """
    report = crud.run_consistency_checks(db=db)
    issues = sum(len(v) for k, v in report.items() if k != "checked_at")
    logger.info(f"Consistency checks completed with {issues} issue(s)")
    return report
