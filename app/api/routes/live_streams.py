"""Live stream routes — server-side validation of premium-gated stream settings."""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.api.deps import get_config, get_sessions
from app.core.auth import Principal, require_auth
from app.core.config import PaymentConfig
from app.services.feature_gate import (
    StreamRejected,
    check_stream_start,
    get_premium_status,
    record_stream_start,
)

router = APIRouter()


class ValidateStartRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    platform: str
    viewer_count: int = Field(alias="viewerCount")
    is_verified: bool = Field(default=False, alias="isVerified")


@router.post("/validate-start")
async def validate_start(
    body: ValidateStartRequest,
    principal: Principal = Depends(require_auth),
    sessions: async_sessionmaker[AsyncSession] = Depends(get_sessions),
    config: PaymentConfig = Depends(get_config),
):
    """Check a requested viewer count and verified badge against the principal's features.

    Accepted starts are counted in the principal's stream stats; rejected
    ones are not.
    """
    async with sessions() as session:
        status = await get_premium_status(session, principal)

    try:
        allowance = check_stream_start(status, config, body.platform, body.viewer_count, body.is_verified)
    except StreamRejected as exc:
        content = {"detail": exc.message}
        if exc.max_viewer_count is not None:
            content["maxViewerCount"] = exc.max_viewer_count
        return JSONResponse(status_code=exc.status_code, content=content)

    async with sessions() as session:
        await record_stream_start(session, principal.principal_id, body.platform)
        await session.commit()

    return {
        "success": True,
        "hasFullFeatures": allowance.has_full_features,
        "maxViewerCount": allowance.max_viewer_count,
        "canUseVerified": allowance.can_use_verified,
    }
