import enum
from datetime import datetime
from typing import List, Literal, Optional
from pydantic import BaseModel, Field, field_validator

from app.models.sharing import PermissionLevel

# Accepted lifetimes for new codes: 1h, 1d, 7d, 30d; 0 means one year
VALID_EXPIRATION_HOURS = (0, 1, 24, 168, 720)
NEVER_EXPIRES_HOURS = 24 * 365


class ShareErrorCode(str, enum.Enum):
    INVALID_REQUEST = "INVALID_REQUEST"
    NOT_FOUND_OR_FORBIDDEN = "NOT_FOUND_OR_FORBIDDEN"
    RATE_LIMITED = "RATE_LIMITED"
    INVALID_OR_EXPIRED = "INVALID_OR_EXPIRED"
    ALREADY_EXHAUSTED = "ALREADY_EXHAUSTED"
    SELF_REDEMPTION = "SELF_REDEMPTION"
    ALREADY_GRANTED = "ALREADY_GRANTED"
    RACE_LOST = "RACE_LOST"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    TRANSIENT = "TRANSIENT"
    INTERNAL = "INTERNAL"


class ShareResult(BaseModel):
    success: bool
    error_code: Optional[ShareErrorCode] = None
    error: Optional[str] = None


class GenerateShareCodeResult(ShareResult):
    code: Optional[str] = None
    formatted_code: Optional[str] = None
    expires_at: Optional[datetime] = None


class RedeemShareCodeResult(ShareResult):
    client_id: Optional[int] = None
    client_name: Optional[str] = None
    permission: Optional[PermissionLevel] = None


class RevokeShareCodesResult(ShareResult):
    revoked_count: Optional[int] = None


class SharedWithEntry(BaseModel):
    user_id: int
    user_name: Optional[str] = None
    permission: PermissionLevel
    shared_at: datetime


class SharingStatsResult(ShareResult):
    shared_with_count: Optional[int] = None
    active_codes_count: Optional[int] = None
    shared_with: List[SharedWithEntry] = []


# Request bodies

class ShareCodeCreate(BaseModel):
    client_id: int
    permission: PermissionLevel = PermissionLevel.VIEW
    expires_in_hours: int = 24
    max_uses: int = Field(1, ge=1, le=100)

    @field_validator("expires_in_hours")
    @classmethod
    def check_expiration(cls, value: int) -> int:
        if value not in VALID_EXPIRATION_HOURS:
            raise ValueError(f"expires_in_hours must be one of {VALID_EXPIRATION_HOURS}")
        return value

    def effective_hours(self) -> int:
        return NEVER_EXPIRES_HOURS if self.expires_in_hours == 0 else self.expires_in_hours


class ShareCodeCreated(BaseModel):
    success: bool = True
    code: str
    expires_at: datetime


class ShareCodeRedeem(BaseModel):
    code: str


class ShareCodeRedeemed(BaseModel):
    success: bool = True
    client_id: int
    client_name: str
    permission: PermissionLevel


class ShareDeleteRequest(BaseModel):
    client_id: int
    action: Literal["revoke-codes", "remove-access"]
    shared_with_user_id: Optional[int] = None
