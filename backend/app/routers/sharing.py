from datetime import timedelta
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from app.core.config import get_settings
from app.core.database import get_db
from app.models.user import User
from app.routers.auth import get_current_user
from app.schemas.sharing import (
    ShareErrorCode,
    ShareResult,
    ShareCodeCreate,
    ShareCodeCreated,
    ShareCodeRedeem,
    ShareCodeRedeemed,
    ShareDeleteRequest,
    SharingStatsResult,
)
from app.services.rate_limit_service import RateLimitService
from app.services.sharing_service import ShareCodeService

logger = logging.getLogger("uvicorn.error")
settings = get_settings()
router = APIRouter(prefix="/clients/share", tags=["sharing"])

MAX_CODE_INPUT_LENGTH = 100
MIN_CODE_INPUT_LENGTH = 10

STATUS_BY_ERROR = {
    ShareErrorCode.INVALID_REQUEST: 400,
    ShareErrorCode.NOT_FOUND_OR_FORBIDDEN: 404,
    ShareErrorCode.RATE_LIMITED: 429,
    ShareErrorCode.INVALID_OR_EXPIRED: 404,
    ShareErrorCode.ALREADY_EXHAUSTED: 409,
    ShareErrorCode.SELF_REDEMPTION: 403,
    ShareErrorCode.ALREADY_GRANTED: 409,
    ShareErrorCode.RACE_LOST: 409,
    ShareErrorCode.FORBIDDEN: 403,
    ShareErrorCode.NOT_FOUND: 404,
    ShareErrorCode.TRANSIENT: 503,
    ShareErrorCode.INTERNAL: 500,
}


def raise_for_result(result: ShareResult) -> None:
    if result.success:
        return
    status_code = STATUS_BY_ERROR.get(result.error_code, 500)
    raise HTTPException(status_code=status_code, detail=result.error)


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()[:45]
    return request.client.host if request.client else "unknown"


@router.post("", response_model=ShareCodeCreated)
async def create_share_code(
    payload: ShareCodeCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    service = ShareCodeService(db)
    result = await service.generate_share_code(
        client_id=payload.client_id,
        created_by_id=current_user.id,
        permission=payload.permission,
        expires_in_hours=payload.effective_hours(),
        max_uses=payload.max_uses,
    )
    raise_for_result(result)
    return ShareCodeCreated(code=result.formatted_code, expires_at=result.expires_at)


@router.get("", response_model=SharingStatsResult)
async def get_sharing_stats(
    client_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    service = ShareCodeService(db)
    result = await service.get_client_sharing_stats(client_id, current_user.id)
    raise_for_result(result)
    return result


@router.delete("")
async def delete_sharing(
    payload: ShareDeleteRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    service = ShareCodeService(db)

    if payload.action == "revoke-codes":
        result = await service.revoke_all_share_codes(payload.client_id, current_user.id)
        raise_for_result(result)
        return {"success": True, "revoked_count": result.revoked_count}

    if payload.shared_with_user_id is None:
        raise HTTPException(status_code=400, detail="shared_with_user_id is required")

    result = await service.remove_shared_access(payload.client_id, payload.shared_with_user_id, current_user.id)
    raise_for_result(result)
    return {"success": True}


@router.post("/redeem", response_model=ShareCodeRedeemed)
async def redeem_share_code(
    payload: ShareCodeRedeem,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    # A failed redemption rolls the session back, which expires current_user
    user_id = current_user.id

    code = payload.code.strip()[:MAX_CODE_INPUT_LENGTH]
    if len(code) < MIN_CODE_INPUT_LENGTH:
        raise HTTPException(status_code=400, detail="Invalid code")

    ip = client_ip(request)
    limiter = RateLimitService(db)
    decision = await limiter.check_rate_limit(
        identifier=f"redeem_{user_id}",
        limit=settings.REDEEM_RATE_LIMIT,
        window=timedelta(minutes=settings.REDEEM_RATE_WINDOW_MINUTES),
        ip_address=ip,
    )
    if not decision.allowed:
        logger.warning(f"SECURITY rate_limited user={user_id} ip={ip} endpoint=/clients/share/redeem")
        raise HTTPException(
            status_code=429,
            detail=f"Too many attempts. Please wait {settings.REDEEM_RATE_WINDOW_MINUTES} minutes.",
            headers={"Retry-After": str(decision.reset_in_seconds)},
        )

    service = ShareCodeService(db)
    result = await service.redeem_share_code(code, user_id)

    if not result.success:
        logger.warning(f"SECURITY redeem_failed user={user_id} ip={ip} reason={result.error_code.value}")
        raise_for_result(result)

    logger.info(f"SECURITY redeem_succeeded user={user_id} ip={ip} client={result.client_id}")
    return ShareCodeRedeemed(
        client_id=result.client_id,
        client_name=result.client_name,
        permission=result.permission,
    )
