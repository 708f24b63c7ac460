from typing import List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.client import Client
from app.models.sharing import SharedClient, PermissionLevel
from app.schemas.client import ClientCreate

# (client, is_owner, permission)
ClientAccess = Tuple[Client, bool, PermissionLevel]


class ClientService:
    def __init__(self, db: AsyncSession, user_id: int):
        self.db = db
        self.user_id = user_id

    async def create_client(self, data: ClientCreate) -> Client:
        client = Client(user_id=self.user_id, **data.model_dump())
        self.db.add(client)
        await self.db.commit()
        await self.db.refresh(client)
        return client

    async def get_clients(self) -> List[ClientAccess]:
        """Own clients first, then clients other users shared with us."""
        result = await self.db.execute(
            select(Client).where(Client.user_id == self.user_id).order_by(Client.created_at.desc())
        )
        owned = [(client, True, PermissionLevel.FULL) for client in result.scalars().all()]

        result = await self.db.execute(
            select(Client, SharedClient.permission)
            .join(SharedClient, SharedClient.client_id == Client.id)
            .where(SharedClient.shared_with_user_id == self.user_id)
            .order_by(SharedClient.created_at.desc())
        )
        shared = [(client, False, permission) for client, permission in result.all()]

        return owned + shared

    async def get_client(self, client_id: int) -> Optional[ClientAccess]:
        result = await self.db.execute(select(Client).where(Client.id == client_id))
        client = result.scalar_one_or_none()
        if not client:
            return None
        if client.user_id == self.user_id:
            return client, True, PermissionLevel.FULL

        permission = await self.db.scalar(
            select(SharedClient.permission).where(
                SharedClient.client_id == client_id,
                SharedClient.shared_with_user_id == self.user_id,
            )
        )
        if permission is None:
            return None
        return client, False, permission
