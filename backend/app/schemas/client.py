from pydantic import BaseModel, EmailStr
from typing import Optional
from datetime import datetime

from app.models.sharing import PermissionLevel


class ClientBase(BaseModel):
    name: str
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    company: Optional[str] = None
    notes: Optional[str] = None


class ClientCreate(ClientBase):
    pass


class Client(ClientBase):
    id: int
    user_id: int
    created_at: datetime
    updated_at: datetime
    is_owner: bool = True
    permission: PermissionLevel = PermissionLevel.FULL

    class Config:
        from_attributes = True
