"""
api/routes/meta.py -- Version / update-availability endpoint.

GET /api/version is public: the login page shows the running version too.
The registry lookup is blocking (requests) and cached by VersionChecker, so
the handler is a plain `def`.
"""

from fastapi import APIRouter, Request

from api.models import VersionResponse
from core.version import VersionChecker

router = APIRouter()


@router.get("/version", response_model=VersionResponse)
def version(request: Request) -> VersionResponse:
    checker: VersionChecker = request.app.state.version_checker
    return VersionResponse.model_validate(checker.check())
