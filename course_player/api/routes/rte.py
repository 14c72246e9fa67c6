"""Bridge for SCORM content calling ``window.API`` / ``window.API_1484_11``.

The content frame of a session forwards each call here. Results follow the RTE
string contract, so misuse comes back as ``"false"`` with HTTP 200.
"""

from fastapi import APIRouter

from course_player.api.deps import CurrentSession
from course_player.core.error_codes import ErrorCode
from course_player.core.errors import ApiError
from course_player.schemas.player import RteCallRequest, RteCallResponse
from course_player.services.scorm_runtime import DIALECTS_BY_API

router = APIRouter(prefix="/v1/player/sessions/{session_id}/rte", tags=["rte"])


@router.post("/{api_name}/{method}", response_model=RteCallResponse)
async def call_rte(
    api_name: str,
    method: str,
    handle: CurrentSession,
    payload: RteCallRequest | None = None,
) -> RteCallResponse:
    if api_name not in DIALECTS_BY_API:
        raise ApiError(status_code=404, code=ErrorCode.RTE_NOT_INSTALLED, message=f"Unknown RTE API {api_name}")
    api = handle.session.rte.lookup(api_name)
    if api is None:
        raise ApiError(status_code=404, code=ErrorCode.RTE_NOT_INSTALLED, message="No SCORM lesson is open")
    args = payload.args if payload else []
    return RteCallResponse(result=api.call(method, *args))
