from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List

from app.core.database import get_db
from app.schemas.client import Client as ClientSchema, ClientCreate
from app.services.client_service import ClientService, ClientAccess
from app.routers.auth import get_current_user
from app.models.user import User

router = APIRouter(prefix="/clients", tags=["clients"])


def to_schema(access: ClientAccess) -> ClientSchema:
    client, is_owner, permission = access
    return ClientSchema.model_validate(client).model_copy(update={"is_owner": is_owner, "permission": permission})


@router.post("", response_model=ClientSchema)
async def create_client(payload: ClientCreate, db: AsyncSession = Depends(get_db), current_user: User = Depends(get_current_user)):
    service = ClientService(db, user_id=current_user.id)
    client = await service.create_client(payload)
    return ClientSchema.model_validate(client)

@router.get("", response_model=List[ClientSchema])
async def get_clients(db: AsyncSession = Depends(get_db), current_user: User = Depends(get_current_user)):
    service = ClientService(db, user_id=current_user.id)
    return [to_schema(access) for access in await service.get_clients()]

@router.get("/{client_id}", response_model=ClientSchema)
async def get_client(client_id: int, db: AsyncSession = Depends(get_db), current_user: User = Depends(get_current_user)):
    service = ClientService(db, user_id=current_user.id)
    access = await service.get_client(client_id)
    if not access:
        raise HTTPException(status_code=404, detail="Client not found")
    return to_schema(access)
