import pytest
import pytest_asyncio
from unittest.mock import AsyncMock
from sqlalchemy import select, update, func
from sqlalchemy.exc import OperationalError

from app.core.security import share_code_fingerprint
from app.models.sharing import ClientShareCode, SharedClient, PermissionLevel
from app.schemas.sharing import ShareErrorCode
from app.services.sharing_service import ShareCodeService


async def load_codes(db, client_id):
    result = await db.execute(
        select(ClientShareCode)
        .where(ClientShareCode.client_id == client_id)
        .order_by(ClientShareCode.id)
        .execution_options(populate_existing=True)
    )
    return result.scalars().all()


async def count_grants(db, client_id):
    return await db.scalar(select(func.count(SharedClient.id)).where(SharedClient.client_id == client_id))


@pytest_asyncio.fixture
async def parties(db, make_user, make_client):
    owner = await make_user("owner@example.com", "Owner")
    alice = await make_user("alice@example.com", "Alice")
    bob = await make_user("bob@example.com", "Bob")
    client = await make_client(owner, "Acme Corp")
    return owner, alice, bob, client


@pytest.fixture
def service(db, clock):
    return ShareCodeService(db, clock=clock)


@pytest.mark.asyncio
async def test_generate_stores_only_hash(service, db, parties):
    owner, _, _, client = parties

    result = await service.generate_share_code(client.id, owner.id, PermissionLevel.EDIT, 24, 1)

    assert result.success
    assert len(result.code) == 43
    assert "-" not in result.code
    assert result.formatted_code.replace("-", "") == result.code
    assert all(len(chunk) <= 6 for chunk in result.formatted_code.split("-"))

    [stored] = await load_codes(db, client.id)
    assert stored.hashed_code != result.code
    assert result.code not in stored.hashed_code
    assert stored.hashed_code.startswith("$argon2id$")
    assert stored.code_fingerprint == share_code_fingerprint(result.code)
    assert stored.permission == PermissionLevel.EDIT
    assert stored.used_count == 0
    assert stored.is_active is True
    assert stored.max_uses == 1


@pytest.mark.asyncio
async def test_generate_requires_ownership(service, parties):
    _, alice, _, client = parties

    not_owner = await service.generate_share_code(client.id, alice.id, PermissionLevel.VIEW, 24, 1)
    missing = await service.generate_share_code(9999, alice.id, PermissionLevel.VIEW, 24, 1)

    assert not_owner.error_code == ShareErrorCode.NOT_FOUND_OR_FORBIDDEN
    assert missing.error_code == ShareErrorCode.NOT_FOUND_OR_FORBIDDEN
    assert not_owner.code is None


@pytest.mark.asyncio
async def test_generate_rejects_invalid_arguments(service, parties):
    owner, _, _, client = parties

    no_uses = await service.generate_share_code(client.id, owner.id, PermissionLevel.VIEW, 24, 0)
    no_lifetime = await service.generate_share_code(client.id, owner.id, PermissionLevel.VIEW, 0, 1)

    assert no_uses.error_code == ShareErrorCode.INVALID_REQUEST
    assert no_lifetime.error_code == ShareErrorCode.INVALID_REQUEST


@pytest.mark.asyncio
async def test_generate_rate_limit_per_trailing_hour(service, clock, parties):
    owner, _, _, client = parties

    for _ in range(10):
        result = await service.generate_share_code(client.id, owner.id, PermissionLevel.VIEW, 24, 1)
        assert result.success

    limited = await service.generate_share_code(client.id, owner.id, PermissionLevel.VIEW, 24, 1)
    assert limited.error_code == ShareErrorCode.RATE_LIMITED
    assert "60 minute" in limited.error

    clock.advance(minutes=61)
    again = await service.generate_share_code(client.id, owner.id, PermissionLevel.VIEW, 24, 1)
    assert again.success


@pytest.mark.asyncio
async def test_end_to_end_single_use(service, db, parties):
    owner, alice, bob, client = parties

    generated = await service.generate_share_code(client.id, owner.id, PermissionLevel.COMMENT, 24, 1)
    redeemed = await service.redeem_share_code(generated.formatted_code, alice.id)

    assert redeemed.success
    assert redeemed.client_id == client.id
    assert redeemed.client_name == "Acme Corp"
    assert redeemed.permission == PermissionLevel.COMMENT

    second = await service.redeem_share_code(generated.code, bob.id)
    assert not second.success
    assert second.error_code in (ShareErrorCode.INVALID_OR_EXPIRED, ShareErrorCode.ALREADY_EXHAUSTED)

    stats = await service.get_client_sharing_stats(client.id, owner.id)
    assert stats.success
    assert stats.shared_with_count == 1
    assert stats.active_codes_count == 0
    assert stats.shared_with[0].user_id == alice.id
    assert stats.shared_with[0].user_name == "Alice"
    assert stats.shared_with[0].permission == PermissionLevel.COMMENT

    [stored] = await load_codes(db, client.id)
    assert stored.used_count == 1
    assert stored.is_active is False

    grant = (await db.execute(select(SharedClient))).scalar_one()
    assert grant.shared_by_user_id == owner.id


@pytest.mark.asyncio
async def test_multi_use_code_stays_active_until_exhausted(service, db, make_user, parties):
    owner, alice, bob, client = parties
    carol = await make_user("carol@example.com", "Carol")

    generated = await service.generate_share_code(client.id, owner.id, PermissionLevel.VIEW, 24, 2)

    assert (await service.redeem_share_code(generated.code, alice.id)).success
    [stored] = await load_codes(db, client.id)
    assert stored.used_count == 1
    assert stored.is_active is True

    assert (await service.redeem_share_code(generated.code, bob.id)).success
    [stored] = await load_codes(db, client.id)
    assert stored.used_count == 2
    assert stored.is_active is False

    third = await service.redeem_share_code(generated.code, carol.id)
    assert third.error_code == ShareErrorCode.INVALID_OR_EXPIRED


@pytest.mark.asyncio
async def test_expired_code_is_rejected(service, clock, parties):
    owner, alice, _, client = parties

    generated = await service.generate_share_code(client.id, owner.id, PermissionLevel.VIEW, 1, 5)
    clock.advance(hours=2)

    result = await service.redeem_share_code(generated.code, alice.id)

    assert result.error_code == ShareErrorCode.INVALID_OR_EXPIRED
    assert result.error == "Invalid or expired code"


@pytest.mark.asyncio
async def test_wrong_code_is_indistinguishable_from_expired(service, parties):
    _, alice, _, _ = parties

    result = await service.redeem_share_code("this-is-not-a-real-code-at-all", alice.id)

    assert result.error_code == ShareErrorCode.INVALID_OR_EXPIRED
    assert result.error == "Invalid or expired code"


@pytest.mark.asyncio
async def test_issuer_cannot_redeem_own_code(service, db, parties):
    owner, _, _, client = parties

    generated = await service.generate_share_code(client.id, owner.id, PermissionLevel.VIEW, 24, 1)
    result = await service.redeem_share_code(generated.code, owner.id)

    assert result.error_code == ShareErrorCode.SELF_REDEMPTION
    [stored] = await load_codes(db, client.id)
    assert stored.used_count == 0


@pytest.mark.asyncio
async def test_second_grant_for_same_client_is_blocked(service, db, parties):
    owner, alice, _, client = parties

    first = await service.generate_share_code(client.id, owner.id, PermissionLevel.VIEW, 24, 1)
    second = await service.generate_share_code(client.id, owner.id, PermissionLevel.FULL, 24, 1)

    assert (await service.redeem_share_code(first.code, alice.id)).success
    result = await service.redeem_share_code(second.code, alice.id)

    assert result.error_code == ShareErrorCode.ALREADY_GRANTED
    codes = await load_codes(db, client.id)
    assert codes[1].used_count == 0
    assert codes[1].is_active is True


@pytest.mark.asyncio
async def test_concurrent_duplicate_grant_rolls_back_increment(service, db, parties):
    owner, alice, _, client = parties

    first = await service.generate_share_code(client.id, owner.id, PermissionLevel.VIEW, 24, 1)
    second = await service.generate_share_code(client.id, owner.id, PermissionLevel.VIEW, 24, 1)
    assert (await service.redeem_share_code(first.code, alice.id)).success

    # Another request created the grant after our pre-check ran
    service._get_grant = AsyncMock(return_value=None)
    result = await service.redeem_share_code(second.code, alice.id)

    assert result.error_code == ShareErrorCode.ALREADY_GRANTED
    codes = await load_codes(db, client.id)
    assert codes[1].used_count == 0
    assert codes[1].is_active is True
    assert await count_grants(db, client.id) == 1


@pytest.mark.asyncio
async def test_exhausted_but_still_active_code(service, db, parties):
    owner, alice, _, client = parties

    generated = await service.generate_share_code(client.id, owner.id, PermissionLevel.VIEW, 24, 1)
    await db.execute(update(ClientShareCode).where(ClientShareCode.client_id == client.id).values(used_count=1))
    await db.commit()

    result = await service.redeem_share_code(generated.code, alice.id)

    assert result.error_code == ShareErrorCode.ALREADY_EXHAUSTED


@pytest.mark.asyncio
async def test_racing_redemptions_never_exceed_max_uses(db, session_factory, clock, make_user, parties):
    owner, _, _, client = parties
    issuer = ShareCodeService(db, clock=clock)
    generated = await issuer.generate_share_code(client.id, owner.id, PermissionLevel.VIEW, 24, 2)

    redeemers = [await make_user(f"racer{i}@example.com") for i in range(5)]
    sessions = [session_factory() for _ in redeemers]
    try:
        # Every request passes the pre-checks against the same snapshot
        services = []
        for session in sessions:
            racer = ShareCodeService(session, clock=clock)
            snapshot = await racer._find_matching_code(generated.code)
            assert snapshot.used_count == 0
            racer._find_matching_code = AsyncMock(return_value=snapshot)
            services.append(racer)

        outcomes = [
            await racer.redeem_share_code(generated.code, redeemer.id)
            for racer, redeemer in zip(services, redeemers)
        ]
    finally:
        for session in sessions:
            await session.close()

    assert sum(1 for outcome in outcomes if outcome.success) == 2
    assert [o.error_code for o in outcomes if not o.success] == [ShareErrorCode.RACE_LOST] * 3

    [stored] = await load_codes(db, client.id)
    assert stored.used_count == 2
    assert stored.is_active is False
    assert await count_grants(db, client.id) == 2


@pytest.mark.asyncio
async def test_revoke_is_idempotent(service, parties):
    owner, alice, _, client = parties

    codes = [await service.generate_share_code(client.id, owner.id, PermissionLevel.VIEW, 24, 3) for _ in range(3)]

    first = await service.revoke_all_share_codes(client.id, owner.id)
    second = await service.revoke_all_share_codes(client.id, owner.id)

    assert first.success and first.revoked_count == 3
    assert second.success and second.revoked_count == 0

    result = await service.redeem_share_code(codes[0].code, alice.id)
    assert result.error_code == ShareErrorCode.INVALID_OR_EXPIRED


@pytest.mark.asyncio
async def test_owner_only_operations(service, parties):
    owner, alice, bob, client = parties

    assert (await service.revoke_all_share_codes(client.id, alice.id)).error_code == ShareErrorCode.FORBIDDEN
    assert (await service.get_client_sharing_stats(client.id, alice.id)).error_code == ShareErrorCode.FORBIDDEN
    assert (await service.remove_shared_access(client.id, bob.id, alice.id)).error_code == ShareErrorCode.FORBIDDEN
    assert (await service.get_client_sharing_stats(9999, owner.id)).error_code == ShareErrorCode.FORBIDDEN


@pytest.mark.asyncio
async def test_remove_shared_access(service, db, parties):
    owner, alice, _, client = parties

    generated = await service.generate_share_code(client.id, owner.id, PermissionLevel.VIEW, 24, 1)
    assert (await service.redeem_share_code(generated.code, alice.id)).success

    removed = await service.remove_shared_access(client.id, alice.id, owner.id)
    assert removed.success
    assert await count_grants(db, client.id) == 0

    again = await service.remove_shared_access(client.id, alice.id, owner.id)
    assert again.error_code == ShareErrorCode.NOT_FOUND


@pytest.mark.asyncio
async def test_stats_count_only_live_codes(service, clock, parties):
    owner, _, _, client = parties

    await service.generate_share_code(client.id, owner.id, PermissionLevel.VIEW, 1, 1)
    await service.generate_share_code(client.id, owner.id, PermissionLevel.VIEW, 24, 1)
    clock.advance(hours=2)

    stats = await service.get_client_sharing_stats(client.id, owner.id)

    assert stats.active_codes_count == 1
    assert stats.shared_with_count == 0
    assert stats.shared_with == []


@pytest.mark.asyncio
async def test_datastore_outage_is_transient():
    db = AsyncMock()
    db.execute.side_effect = OperationalError("SELECT 1", {}, Exception("connection refused"))
    service = ShareCodeService(db)

    result = await service.revoke_all_share_codes(1, 1)

    assert result.error_code == ShareErrorCode.TRANSIENT
    db.rollback.assert_awaited_once()


@pytest.mark.asyncio
async def test_unexpected_error_is_generic():
    db = AsyncMock()
    db.execute.side_effect = RuntimeError("boom")
    service = ShareCodeService(db)

    result = await service.redeem_share_code("abcdefghijklmnop", 1)

    assert result.error_code == ShareErrorCode.INTERNAL
    assert "boom" not in result.error
