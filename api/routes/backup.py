"""
api/routes/backup.py -- Whole-database export and restore (admin only).

Routes:
  GET  /api/backup/export?includeUsers=true|false   -- snapshot as a JSON download
  POST /api/backup/import                           -- body {mode: "replace", snapshot}

Import is a single-transaction full replace; "merge" and any other mode are
rejected with 400 before anything is read. A restore that includes users
replaces every account, the caller's own included: the caller's token stops
working if its user id is not in the snapshot.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from api.models import ImportRequest, ImportResponse
from auth.dependencies import require_admin
from auth.models import User
from backup.engine import export_snapshot, import_snapshot

logger = logging.getLogger("appbudget.api.backup")

router = APIRouter()


@router.get("/backup/export")
def export_backup(
    request: Request,
    include_users: bool = Query(default=False, alias="includeUsers"),
    current_user: User = Depends(require_admin),
) -> JSONResponse:
    snapshot = export_snapshot(request.app.state.engine, include_users=include_users)
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    resp = JSONResponse(content=snapshot)
    resp.headers["Content-Disposition"] = f'attachment; filename="app-budget-backup-{stamp}.json"'
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/backup/import", response_model=ImportResponse)
def import_backup(
    request: Request,
    body: ImportRequest,
    current_user: User = Depends(require_admin),
) -> ImportResponse:
    logger.info("Restore requested by admin %s (mode=%s)", current_user.id, body.mode)
    restored = import_snapshot(request.app.state.engine, body.snapshot, body.mode)
    return ImportResponse(restored=restored)
