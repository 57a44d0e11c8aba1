from fastapi import APIRouter, Depends, Request
from sqlalchemy import text
from sqlalchemy.orm import Session

from estate_contracts.db.session import get_db

router = APIRouter()


@router.get("/health")
async def health(request: Request, db: Session = Depends(get_db)):
    rid = getattr(request.state, "request_id", None)
    db.execute(text("SELECT 1"))
    scheduler = getattr(request.app.state, "scheduler", None)
    return {
        "status": "ok",
        "database": "ok",
        "scheduler": "running" if scheduler is not None and scheduler.running else "off",
        "request_id": rid,
    }
