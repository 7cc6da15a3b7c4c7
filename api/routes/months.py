"""
api/routes/months.py -- Month budget documents.

Routes (all require auth):
  GET    /api/months              -- {months: [{monthKey, data}]} ordered by key
  GET    /api/months/{monthKey}   -- {monthKey, data}; 404 if absent
  PUT    /api/months/{monthKey}   -- body {data: {...}}; upsert; 204
  DELETE /api/months/{monthKey}   -- 204 whether or not it existed

Every path carrying a month key checks it against YYYY-MM (month 01-12)
before touching the store; a bad key is 400, never 404.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from api.models import MonthListResponse, MonthOut, MonthPut
from auth.dependencies import get_current_user
from auth.models import User
from budget.store import MonthStore, require_month_key
from core.errors import NotFoundError

router = APIRouter()


@router.get("/months", response_model=MonthListResponse)
def list_months(request: Request, current_user: User = Depends(get_current_user)) -> MonthListResponse:
    store: MonthStore = request.app.state.month_store
    return MonthListResponse(months=[MonthOut(month_key=m.month_key, data=m.data) for m in store.list_months()])


@router.get("/months/{month_key}", response_model=MonthOut)
def get_month(request: Request, month_key: str, current_user: User = Depends(get_current_user)) -> MonthOut:
    store: MonthStore = request.app.state.month_store
    month = store.get(require_month_key(month_key))
    if month is None:
        raise NotFoundError("Month not found")
    return MonthOut(month_key=month.month_key, data=month.data)


@router.put("/months/{month_key}", status_code=204)
def put_month(
    request: Request,
    month_key: str,
    body: MonthPut,
    current_user: User = Depends(get_current_user),
) -> Response:
    store: MonthStore = request.app.state.month_store
    store.upsert(require_month_key(month_key), body.data)
    return Response(status_code=204)


@router.delete("/months/{month_key}", status_code=204)
def delete_month(request: Request, month_key: str, current_user: User = Depends(get_current_user)) -> Response:
    store: MonthStore = request.app.state.month_store
    store.delete(require_month_key(month_key))
    return Response(status_code=204)
