import hmac
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Response
from sqlalchemy.orm import Session

from config import get_settings
from database import SessionLocal
from models import MonthlyBudgetRecord
from schemas import MonthIn
from services import MonthNotFound, MonthService, SettingsService

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(title="Budget Store")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def require_token(authorization: Optional[str] = Header(default=None)) -> None:
    expected = get_settings().api_token
    if not expected:
        raise HTTPException(status_code=500, detail="Auth not configured")
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(token.strip(), expected):
        raise HTTPException(status_code=401, detail="Unauthorized")


def _timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat(timespec="microseconds").replace("+00:00", "Z")


def _month_payload(record: MonthlyBudgetRecord) -> dict[str, Any]:
    return {
        "monthKey": record.month_key,
        "data": record.data,
        "updatedAt": _timestamp(record.updated_at),
    }


@app.get("/api/health")
def api_health():
    return {"status": "ok"}


@app.get("/api/months", dependencies=[Depends(require_token)])
def api_list_months(db: Session = Depends(get_db)):
    records = MonthService(db).list_all()
    return {"months": [_month_payload(record) for record in records]}


@app.get("/api/months/{month_key}", dependencies=[Depends(require_token)])
def api_get_month(month_key: str, db: Session = Depends(get_db)):
    try:
        record = MonthService(db).get(month_key)
    except MonthNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _month_payload(record)


@app.put("/api/months/{month_key}", dependencies=[Depends(require_token)])
def api_put_month(month_key: str, payload: MonthIn, db: Session = Depends(get_db)):
    try:
        record = MonthService(db).upsert(month_key, payload.data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    logger.info(f"month_saved: month={month_key}")
    return {"monthKey": record.month_key, "updatedAt": _timestamp(record.updated_at)}


@app.delete(
    "/api/months/{month_key}",
    status_code=204,
    dependencies=[Depends(require_token)],
)
def api_delete_month(month_key: str, db: Session = Depends(get_db)):
    try:
        MonthService(db).delete(month_key)
    except MonthNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    logger.info(f"month_deleted: month={month_key}")
    return Response(status_code=204)


@app.get("/api/settings", dependencies=[Depends(require_token)])
def api_get_settings(db: Session = Depends(get_db)):
    return {"settings": SettingsService(db).get()}


@app.patch("/api/settings", dependencies=[Depends(require_token)])
def api_patch_settings(
    partial: dict[str, Any] = Body(...), db: Session = Depends(get_db)
):
    try:
        settings = SettingsService(db).patch(partial)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"settings": settings}
