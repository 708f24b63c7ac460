"""
Client sharing through one-time / limited-use share codes.

Codes carry 256 bits of entropy and are stored only as argon2 hashes.
Issuance is throttled by counting recent rows in the database, so the limit
holds across restarts and multiple workers. Redemption consumes a use with a
single conditional UPDATE and creates the grant in the same transaction, so
concurrent redemptions can never exceed ``max_uses``.
"""
import asyncio
import math
import re
from datetime import datetime, timedelta
from functools import partial
from typing import Callable, List, Optional

from sqlalchemy import select, update, func, case
from sqlalchemy.exc import IntegrityError, OperationalError, TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.core.config import get_settings
from app.core.security import (
    generate_secure_share_code,
    hash_share_code,
    verify_share_code,
    share_code_fingerprint,
)
from app.models.client import Client
from app.models.sharing import ClientShareCode, SharedClient, PermissionLevel
from app.schemas.sharing import (
    ShareErrorCode,
    ShareResult,
    GenerateShareCodeResult,
    RedeemShareCodeResult,
    RevokeShareCodesResult,
    SharingStatsResult,
    SharedWithEntry,
)
from app.utils.dates import utcnow, as_utc
from app.utils.logger import get_logger

logger = get_logger("sharing_service")
settings = get_settings()

DISPLAY_CHUNK_SIZE = 6
DISPLAY_SEPARATOR = "-"

ERROR_MESSAGES = {
    ShareErrorCode.INVALID_REQUEST: "Invalid share request",
    ShareErrorCode.NOT_FOUND_OR_FORBIDDEN: "Client not found or you are not allowed to share it",
    ShareErrorCode.RATE_LIMITED: "You have reached the hourly share code limit. Try again later.",
    ShareErrorCode.INVALID_OR_EXPIRED: "Invalid or expired code",
    ShareErrorCode.ALREADY_EXHAUSTED: "This code has already been used",
    ShareErrorCode.SELF_REDEMPTION: "You cannot import your own clients",
    ShareErrorCode.ALREADY_GRANTED: "You already have access to this client",
    ShareErrorCode.RACE_LOST: "This code was just used by another request",
    ShareErrorCode.FORBIDDEN: "You are not allowed to perform this action",
    ShareErrorCode.NOT_FOUND: "Shared access not found",
    ShareErrorCode.TRANSIENT: "The service is temporarily unavailable. Please retry.",
    ShareErrorCode.INTERNAL: "Unexpected error while processing the share code",
}


class ShareCodeError(Exception):
    def __init__(self, code: ShareErrorCode, message: Optional[str] = None):
        self.code = code
        self.message = message or ERROR_MESSAGES[code]
        super().__init__(self.message)


def format_code_for_display(code: str) -> str:
    """Split a code into 6-character groups joined by dashes."""
    chunks = [code[i:i + DISPLAY_CHUNK_SIZE] for i in range(0, len(code), DISPLAY_CHUNK_SIZE)]
    return DISPLAY_SEPARATOR.join(chunks) or code


def normalize_share_code(code: str) -> str:
    """
    Undo display formatting.

    base64url output may itself contain "-", so we strip every dash on both
    sides: fingerprint and hash are always computed over the stripped form.
    """
    return re.sub(r"[\s\-]", "", code)


class ShareCodeService:
    def __init__(self, db: AsyncSession, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock

    # Public operations

    async def generate_share_code(
        self,
        client_id: int,
        created_by_id: int,
        permission: PermissionLevel,
        expires_in_hours: int,
        max_uses: int,
    ) -> GenerateShareCodeResult:
        try:
            if expires_in_hours <= 0 or max_uses < 1:
                raise ShareCodeError(ShareErrorCode.INVALID_REQUEST)

            client = await self._get_client(client_id)
            if not client or client.user_id != created_by_id:
                raise ShareCodeError(ShareErrorCode.NOT_FOUND_OR_FORBIDDEN)

            await self._check_issue_rate_limit(created_by_id)

            plain_code = self._new_plain_code()
            hashed_code = await self._run_blocking(hash_share_code, plain_code)

            now = self.clock()
            expires_at = now + timedelta(hours=expires_in_hours)

            self.db.add(ClientShareCode(
                hashed_code=hashed_code,
                code_fingerprint=share_code_fingerprint(plain_code),
                client_id=client_id,
                created_by_id=created_by_id,
                permission=permission,
                expires_at=expires_at,
                max_uses=max_uses,
                used_count=0,
                is_active=True,
                created_at=now,
            ))
            await self.db.commit()

            logger.info(f"Share code issued for client {client_id} by user {created_by_id} (max_uses={max_uses})")
            return GenerateShareCodeResult(
                success=True,
                code=plain_code,
                formatted_code=format_code_for_display(plain_code),
                expires_at=expires_at,
            )
        except Exception as e:
            return await self._failure(GenerateShareCodeResult, e, "generating share code")

    async def redeem_share_code(self, code: str, redeemed_by_user_id: int) -> RedeemShareCodeResult:
        try:
            clean_code = normalize_share_code(code)
            share_code = await self._find_matching_code(clean_code)
            if share_code is None:
                raise ShareCodeError(ShareErrorCode.INVALID_OR_EXPIRED)

            # Snapshot before the transaction; a rollback expires ORM state
            code_id = share_code.id
            client_id = share_code.client_id
            client_name = share_code.client.name
            issuer_id = share_code.created_by_id
            permission = share_code.permission

            if share_code.used_count >= share_code.max_uses:
                raise ShareCodeError(ShareErrorCode.ALREADY_EXHAUSTED)

            if issuer_id == redeemed_by_user_id:
                raise ShareCodeError(ShareErrorCode.SELF_REDEMPTION)

            if await self._get_grant(client_id, redeemed_by_user_id):
                raise ShareCodeError(ShareErrorCode.ALREADY_GRANTED)

            await self._consume_and_grant(code_id, client_id, issuer_id, redeemed_by_user_id, permission)

            logger.info(f"Share code {code_id} redeemed: client {client_id} shared with user {redeemed_by_user_id}")
            return RedeemShareCodeResult(
                success=True,
                client_id=client_id,
                client_name=client_name,
                permission=permission,
            )
        except Exception as e:
            return await self._failure(RedeemShareCodeResult, e, "redeeming share code")

    async def revoke_all_share_codes(self, client_id: int, user_id: int) -> RevokeShareCodesResult:
        try:
            await self._require_owner(client_id, user_id)

            result = await self.db.execute(
                update(ClientShareCode)
                .where(ClientShareCode.client_id == client_id, ClientShareCode.is_active.is_(True))
                .values(is_active=False)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()

            logger.info(f"Revoked {result.rowcount} share codes for client {client_id}")
            return RevokeShareCodesResult(success=True, revoked_count=result.rowcount)
        except Exception as e:
            return await self._failure(RevokeShareCodesResult, e, "revoking share codes")

    async def get_client_sharing_stats(self, client_id: int, user_id: int) -> SharingStatsResult:
        try:
            await self._require_owner(client_id, user_id)

            result = await self.db.execute(
                select(SharedClient)
                .where(SharedClient.client_id == client_id)
                .options(selectinload(SharedClient.shared_with_user))
                .order_by(SharedClient.created_at)
            )
            shares = result.scalars().all()

            active_codes_count = await self.db.scalar(
                select(func.count(ClientShareCode.id)).where(
                    ClientShareCode.client_id == client_id,
                    ClientShareCode.is_active.is_(True),
                    ClientShareCode.expires_at > self.clock(),
                )
            )

            shared_with: List[SharedWithEntry] = [
                SharedWithEntry(
                    user_id=share.shared_with_user_id,
                    user_name=share.shared_with_user.name if share.shared_with_user else None,
                    permission=share.permission,
                    shared_at=share.created_at,
                )
                for share in shares
            ]
            return SharingStatsResult(
                success=True,
                shared_with_count=len(shared_with),
                active_codes_count=active_codes_count or 0,
                shared_with=shared_with,
            )
        except Exception as e:
            return await self._failure(SharingStatsResult, e, "getting sharing stats")

    async def remove_shared_access(self, client_id: int, shared_with_user_id: int, owner_id: int) -> ShareResult:
        try:
            await self._require_owner(client_id, owner_id)

            grant = await self._get_grant(client_id, shared_with_user_id)
            if grant is None:
                raise ShareCodeError(ShareErrorCode.NOT_FOUND)

            await self.db.delete(grant)
            await self.db.commit()

            logger.info(f"Removed access of user {shared_with_user_id} to client {client_id}")
            return ShareResult(success=True)
        except Exception as e:
            return await self._failure(ShareResult, e, "removing shared access")

    # Helpers

    def _new_plain_code(self) -> str:
        # The display form is stripped of dashes before lookup, so the stored
        # fingerprint/hash must be of a code that survives normalization.
        while True:
            code = generate_secure_share_code()
            if normalize_share_code(code) == code:
                return code

    async def _run_blocking(self, fn, *args):
        # argon2 is deliberately slow; keep it off the event loop
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(fn, *args))

    async def _get_client(self, client_id: int) -> Optional[Client]:
        result = await self.db.execute(select(Client).where(Client.id == client_id))
        return result.scalar_one_or_none()

    async def _require_owner(self, client_id: int, user_id: int) -> Client:
        client = await self._get_client(client_id)
        if not client or client.user_id != user_id:
            raise ShareCodeError(ShareErrorCode.FORBIDDEN)
        return client

    async def _get_grant(self, client_id: int, user_id: int) -> Optional[SharedClient]:
        result = await self.db.execute(
            select(SharedClient).where(
                SharedClient.client_id == client_id,
                SharedClient.shared_with_user_id == user_id,
            )
        )
        return result.scalar_one_or_none()

    async def _check_issue_rate_limit(self, user_id: int) -> None:
        now = self.clock()
        window = timedelta(minutes=settings.SHARE_CODE_RATE_WINDOW_MINUTES)
        window_start = now - window

        recent_count, oldest = (await self.db.execute(
            select(func.count(ClientShareCode.id), func.min(ClientShareCode.created_at)).where(
                ClientShareCode.created_by_id == user_id,
                ClientShareCode.created_at >= window_start,
            )
        )).one()

        if recent_count >= settings.SHARE_CODE_RATE_LIMIT:
            wait_minutes = 1
            if oldest is not None:
                remaining = (as_utc(oldest) + window - now).total_seconds()
                wait_minutes = max(1, math.ceil(remaining / 60))
            logger.warning(f"User {user_id} hit the share code rate limit ({recent_count} in window)")
            raise ShareCodeError(
                ShareErrorCode.RATE_LIMITED,
                f"You have reached the hourly share code limit. Try again in {wait_minutes} minute(s).",
            )

    async def _find_matching_code(self, clean_code: str) -> Optional[ClientShareCode]:
        """
        Find the active, unexpired code whose hash verifies against the plaintext.

        Candidates are narrowed by fingerprint and capped, so the number of
        argon2 verifications per attempt stays bounded.
        """
        if not clean_code:
            return None

        result = await self.db.execute(
            select(ClientShareCode)
            .where(
                ClientShareCode.code_fingerprint == share_code_fingerprint(clean_code),
                ClientShareCode.is_active.is_(True),
                ClientShareCode.expires_at > self.clock(),
            )
            .options(selectinload(ClientShareCode.client))
            .order_by(ClientShareCode.created_at.desc())
            .limit(settings.SHARE_CODE_MAX_CANDIDATES)
            .execution_options(populate_existing=True)
        )
        candidates = result.scalars().all()

        for candidate in candidates:
            if await self._run_blocking(verify_share_code, candidate.hashed_code, clean_code):
                return candidate
        return None

    async def _consume_and_grant(
        self,
        code_id: int,
        client_id: int,
        issuer_id: int,
        redeemed_by_user_id: int,
        permission: PermissionLevel,
    ) -> None:
        # Compare-and-swap on used_count. SET expressions see the pre-update
        # row, so is_active drops to false exactly when the last use is taken.
        result = await self.db.execute(
            update(ClientShareCode)
            .where(
                ClientShareCode.id == code_id,
                ClientShareCode.used_count < ClientShareCode.max_uses,
                ClientShareCode.is_active.is_(True),
            )
            .values(
                used_count=ClientShareCode.used_count + 1,
                is_active=case(
                    (ClientShareCode.used_count + 1 >= ClientShareCode.max_uses, False),
                    else_=True,
                ),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise ShareCodeError(ShareErrorCode.RACE_LOST)

        self.db.add(SharedClient(
            client_id=client_id,
            shared_with_user_id=redeemed_by_user_id,
            shared_by_user_id=issuer_id,
            permission=permission,
            created_at=self.clock(),
        ))
        try:
            await self.db.flush()
        except IntegrityError:
            # Same user redeemed concurrently through another code
            raise ShareCodeError(ShareErrorCode.ALREADY_GRANTED)

        await self.db.commit()

    async def _failure(self, result_cls, error: Exception, action: str):
        await self.db.rollback()

        if isinstance(error, ShareCodeError):
            code, message = error.code, error.message
        elif isinstance(error, (OperationalError, PoolTimeoutError, TimeoutError)):
            logger.error(f"Datastore unavailable while {action}: {type(error).__name__}")
            code = ShareErrorCode.TRANSIENT
            message = ERROR_MESSAGES[code]
        else:
            logger.exception(f"Unexpected error while {action}")
            code = ShareErrorCode.INTERNAL
            message = ERROR_MESSAGES[code]

        return result_cls(success=False, error_code=code, error=message)
