from datetime import datetime, timezone

import pytest

from sakalsense.config import DeviceType, Role
from sakalsense.service.sessions import ClientInfo, SessionManager, detect_device, location_label
from sakalsense.storage.redis_cache import MemoryCache


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.mark.parametrize(
    "user_agent,expected",
    [
        (None, DeviceType.UNKNOWN),
        ("", DeviceType.UNKNOWN),
        ("Mozilla/5.0 (iPhone; CPU iPhone OS 17_0) Mobile/15E148", DeviceType.MOBILE),
        ("Mozilla/5.0 (iPad; CPU OS 17_0 like Mac OS X)", DeviceType.TABLET),
        ("Mozilla/5.0 (Macintosh; MacBook Pro)", DeviceType.LAPTOP),
        ("Mozilla/5.0 (Windows NT 10.0; Win64; x64)", DeviceType.DESKTOP),
    ],
)
def test_detect_device(user_agent, expected):
    assert detect_device(user_agent) is expected


def test_client_info_normalizes_mapped_addresses():
    info = ClientInfo.from_request_values("::ffff:10.0.0.5", "curl/8.0")
    assert info.ip == "10.0.0.5"
    assert info.location == "Local Network"
    assert ClientInfo.from_request_values("::1", None).ip == "127.0.0.1"


def test_location_label_public_and_garbage():
    assert location_label("8.8.8.8") is None
    assert location_label("not-an-ip") is None


async def test_create_session_stores_record():
    manager = SessionManager(MemoryCache(), ttl_seconds=60)
    result = await manager.create_session("a@example.com", Role.ADMIN, DeviceType.DESKTOP, "1.2.3.4", "ua")

    assert result.limit_exceeded is False
    assert await manager.validate_session(result.session.session_id, "a@example.com", Role.ADMIN)
    active = await manager.get_active_sessions("a@example.com", Role.ADMIN)
    assert [s.session_id for s in active] == [result.session.session_id]
    assert active[0].device == "desktop"


async def test_limit_reached_returns_unstored_session_and_active_list():
    manager = SessionManager(MemoryCache(), ttl_seconds=60)
    first = await manager.create_session("u@example.com", Role.USER, "mobile", "1.1.1.1", "ua")
    second = await manager.create_session("u@example.com", Role.USER, "desktop", "2.2.2.2", "ua")

    assert second.limit_exceeded is True
    assert [s.session_id for s in second.active_sessions] == [first.session.session_id]
    assert not await manager.validate_session(second.session.session_id, "u@example.com", Role.USER)


async def test_sessions_are_scoped_by_role():
    manager = SessionManager(MemoryCache(), ttl_seconds=60)
    await manager.create_session("same@example.com", Role.USER, "desktop", "1.1.1.1", "ua")
    admin = await manager.create_session("same@example.com", Role.ADMIN, "desktop", "1.1.1.1", "ua")

    assert admin.limit_exceeded is False
    assert len(await manager.get_active_sessions("same@example.com", Role.ADMINISTRATOR)) == 0


async def test_active_sessions_newest_first():
    ticks = iter(
        [
            datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc),
            datetime(2024, 1, 1, 12, 0, 5, tzinfo=timezone.utc),
        ]
    )
    manager = SessionManager(MemoryCache(), ttl_seconds=60, clock=lambda: next(ticks))
    older = await manager.create_session("a@example.com", Role.ADMIN, "desktop", "1.1.1.1", "ua")
    newer = await manager.create_session("a@example.com", Role.ADMIN, "laptop", "1.1.1.1", "ua")

    active = await manager.get_active_sessions("a@example.com", Role.ADMIN)
    assert [s.session_id for s in active] == [newer.session.session_id, older.session.session_id]
    assert active[0].login_at > active[1].login_at


async def test_corrupt_record_is_skipped():
    cache = MemoryCache()
    manager = SessionManager(cache, ttl_seconds=60)
    good = await manager.create_session("a@example.com", Role.ADMIN, "desktop", "1.1.1.1", "ua")
    await cache.set("session:ADMIN:a@example.com:broken", "{not json", ttl_seconds=60)

    active = await manager.get_active_sessions("a@example.com", Role.ADMIN)
    assert [s.session_id for s in active] == [good.session.session_id]


async def test_sessions_expire_and_activity_extends_ttl():
    clock = FakeClock()
    manager = SessionManager(MemoryCache(clock=clock), ttl_seconds=60)
    created = await manager.create_session("a@example.com", Role.ADMIN, "desktop", "1.1.1.1", "ua")
    sid = created.session.session_id

    clock.now += 50
    assert await manager.update_session_activity(sid, "a@example.com", Role.ADMIN)
    clock.now += 50
    assert await manager.validate_session(sid, "a@example.com", Role.ADMIN)
    clock.now += 11
    assert not await manager.validate_session(sid, "a@example.com", Role.ADMIN)
    assert not await manager.update_session_activity(sid, "a@example.com", Role.ADMIN)


async def test_invalidate_session_reports_presence():
    manager = SessionManager(MemoryCache(), ttl_seconds=60)
    created = await manager.create_session("a@example.com", Role.ADMIN, "desktop", "1.1.1.1", "ua")

    assert await manager.invalidate_session(created.session.session_id, "a@example.com", Role.ADMIN)
    assert not await manager.invalidate_session(created.session.session_id, "a@example.com", Role.ADMIN)


async def test_invalidate_all_keeps_excepted_session():
    manager = SessionManager(MemoryCache(), ttl_seconds=60)
    keep = await manager.create_session("a@example.com", Role.ADMIN, "desktop", "1.1.1.1", "ua")
    await manager.create_session("a@example.com", Role.ADMIN, "laptop", "1.1.1.1", "ua")

    removed = await manager.invalidate_all_sessions(
        "a@example.com", Role.ADMIN, except_session_id=keep.session.session_id
    )
    assert removed == 1
    active = await manager.get_active_sessions("a@example.com", Role.ADMIN)
    assert [s.session_id for s in active] == [keep.session.session_id]
    assert await manager.invalidate_all_sessions("a@example.com", Role.ADMIN) == 1
    assert await manager.invalidate_all_sessions("a@example.com", Role.ADMIN) == 0


async def test_serial_creates_never_exceed_role_limit():
    manager = SessionManager(MemoryCache(), ttl_seconds=60)
    results = [
        await manager.create_session("a@example.com", Role.ADMINISTRATOR, "desktop", "1.1.1.1", "ua")
        for _ in range(4)
    ]

    assert [r.limit_exceeded for r in results] == [False, False, True, True]
    assert len(await manager.get_active_sessions("a@example.com", Role.ADMINISTRATOR)) == 2

    await manager.invalidate_all_sessions("a@example.com", Role.ADMINISTRATOR)
    assert await manager.get_active_sessions("a@example.com", Role.ADMINISTRATOR) == []
