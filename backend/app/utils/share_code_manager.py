import asyncio
import sys

from sqlalchemy import select

from app.core.database import SessionLocal, engine, Base
from app.models.client import Client
from app.models.sharing import PermissionLevel
from app.services.sharing_service import ShareCodeService

USAGE = "Usage: python -m app.utils.share_code_manager <client_id> [permission] [expires_in_hours] [max_uses]"


async def issue_code(client_id: int, permission: PermissionLevel, expires_in_hours: int, max_uses: int) -> int:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with SessionLocal() as db:
        client = (await db.execute(select(Client).where(Client.id == client_id))).scalar_one_or_none()
        if not client:
            print(f"Client {client_id} not found")
            return 1

        service = ShareCodeService(db)
        result = await service.generate_share_code(
            client_id=client.id,
            created_by_id=client.user_id,
            permission=permission,
            expires_in_hours=expires_in_hours,
            max_uses=max_uses,
        )

    if not result.success:
        print(f"Could not issue code: {result.error}")
        return 1

    print(f"Share code for '{client.name}' ({permission.value}, {max_uses} use(s)):")
    print(f"  {result.formatted_code}")
    print(f"Expires at {result.expires_at.isoformat()}")
    return 0


def parse_args(argv):
    if not argv:
        raise ValueError("client_id is required")
    client_id = int(argv[0])
    permission = PermissionLevel(argv[1].upper()) if len(argv) > 1 else PermissionLevel.VIEW
    expires_in_hours = int(argv[2]) if len(argv) > 2 else 24
    max_uses = int(argv[3]) if len(argv) > 3 else 1
    return client_id, permission, expires_in_hours, max_uses


if __name__ == "__main__":
    try:
        args = parse_args(sys.argv[1:])
    except ValueError as e:
        print(f"{e}\n{USAGE}")
        sys.exit(1)

    sys.exit(asyncio.run(issue_code(*args)))
