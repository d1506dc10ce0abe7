from concurrent.futures import ThreadPoolExecutor

import pytest

from errors import OrchestratorUnavailableError, PortsExhaustedError
from models import PortReservation
from port_allocator import ConflictType, PortAllocator


def _held_ports(session_factory):
    db = session_factory()
    try:
        return sorted(r.port for r in db.query(PortReservation).all())
    finally:
        db.close()


def test_allocates_lowest_free_ports(allocator):
    allocation = allocator.allocate("alice@example.com")
    assert allocation.port == 25565
    assert allocation.rcon_port == 35565

    second = allocator.allocate("alice@example.com", needs_rcon=False)
    assert second.port == 25566
    assert second.rcon_port is None


def test_skips_ports_bound_by_containers(allocator, containers):
    containers.bound_ports = {25565, 25566, 35565}
    allocation = allocator.allocate("alice@example.com")
    assert allocation.port == 25567
    assert allocation.rcon_port == 35566


def test_never_hands_out_important_ports(containers, session_factory):
    allocator = PortAllocator(containers, session_factory, game_range=(25565, 25567),
                              important_ports={25565, 25566})
    assert allocator.allocate("alice@example.com", needs_rcon=False).port == 25567


def test_concurrent_allocations_never_collide(allocator, session_factory):
    def claim(i):
        return allocator.allocate(f"user{i}@example.com")

    with ThreadPoolExecutor(max_workers=8) as executor:
        results = list(executor.map(claim, range(12)))

    game_ports = [r.port for r in results]
    rcon_ports = [r.rcon_port for r in results]
    assert len(set(game_ports)) == 12
    assert len(set(rcon_ports)) == 12
    assert len(_held_ports(session_factory)) == 24


def test_exhausted_range_raises(containers, session_factory):
    allocator = PortAllocator(containers, session_factory, game_range=(25565, 25566), important_ports=())
    allocator.allocate("a@example.com", needs_rcon=False)
    allocator.allocate("b@example.com", needs_rcon=False)
    with pytest.raises(PortsExhaustedError):
        allocator.allocate("c@example.com", needs_rcon=False)


def test_unreachable_orchestrator_is_fatal(allocator, containers):
    containers.failures["used_host_ports"] = OrchestratorUnavailableError("down")
    with pytest.raises(OrchestratorUnavailableError):
        allocator.allocate("alice@example.com")


def test_release_is_idempotent(allocator, session_factory):
    allocation = allocator.allocate("alice@example.com", needs_rcon=False)
    assert allocator.release(allocation.port) is True
    assert allocator.release(allocation.port) is False
    assert _held_ports(session_factory) == []


def test_release_server_frees_both_ports(allocator, session_factory):
    allocator.allocate("alice@example.com", server_id="srv-1")
    allocator.allocate("bob@example.com", server_id="srv-2")
    assert sorted(allocator.release_server("srv-1")) == [25565, 35565]
    assert _held_ports(session_factory) == [25566, 35566]


def test_user_reservations_steer_allocation(allocator, add_user):
    add_user("bob@example.com", reserved_ports=[25565])
    add_user("carol@example.com", reserved_port_ranges=[{"start": 25570, "end": 25571}])

    assert allocator.allocate("alice@example.com", needs_rcon=False).port == 25566
    assert allocator.allocate("bob@example.com", needs_rcon=False).port == 25565
    assert allocator.allocate("carol@example.com", needs_rcon=False).port == 25570


def test_availability_reports_conflict_type(allocator, containers, add_user):
    containers.bound_ports = {25567}
    add_user("bob@example.com", reserved_ports=[25568])
    allocator.allocate("alice@example.com", needs_rcon=False, server_id="srv-1")

    assert allocator.is_available(80, "alice@example.com").conflict_type == ConflictType.OUT_OF_RANGE
    assert allocator.is_available(25565, "alice@example.com").conflict_type == ConflictType.DATABASE
    assert allocator.is_available(25567, "alice@example.com").conflict_type == ConflictType.CONTAINER
    assert allocator.is_available(25568, "alice@example.com").conflict_type == ConflictType.RESERVED
    assert allocator.is_available(25568, "bob@example.com").available
    assert allocator.is_available(25565, "alice@example.com", exclude_server_id="srv-1").available


def test_reserve_for_user_requires_admin(allocator, add_user):
    add_user("alice@example.com")
    add_user("bob@example.com")
    result = allocator.reserve_for_user("alice@example.com", "bob@example.com", [25570])
    assert not result.success
    assert "administrators" in result.error


def test_reserve_for_user_rejects_ports_of_other_users(allocator, add_user):
    add_user("admin@example.com", role="admin")
    add_user("alice@example.com", reserved_ports=[25570])
    add_user("bob@example.com")

    taken = allocator.reserve_for_user("admin@example.com", "bob@example.com", [25570])
    assert not taken.success
    assert "another user" in taken.error

    outside = allocator.reserve_for_user("admin@example.com", "bob@example.com", [30000])
    assert not outside.success

    ok = allocator.reserve_for_user("admin@example.com", "bob@example.com", [25571, 25572])
    assert ok.success
    assert ok.reserved == [25571, 25572]


def test_reserve_ranges_validates_overlaps(allocator, add_user, session_factory):
    add_user("admin@example.com", role="admin")
    add_user("alice@example.com", reserved_port_ranges=[{"start": 25580, "end": 25582}])
    add_user("bob@example.com")

    clash = allocator.reserve_ranges_for_user(
        "admin@example.com", "bob@example.com", [{"start": 25581, "end": 25583}])
    assert not clash.success

    inverted = allocator.reserve_ranges_for_user(
        "admin@example.com", "bob@example.com", [{"start": 25590, "end": 25585}])
    assert not inverted.success

    ok = allocator.reserve_ranges_for_user(
        "admin@example.com", "bob@example.com", [{"start": 25585, "end": 25586, "description": "event"}])
    assert ok.success

    report = allocator.usage_report()
    assert report["user_reserved"]["bob@example.com"]["user-reserved-range"] == [25585, 25586]
    assert report["user_reserved"]["alice@example.com"]["user-reserved-range"] == [25580, 25581, 25582]


def test_usage_report_counts(allocator, containers):
    containers.bound_ports = {25570, 40000}
    allocator.allocate("alice@example.com")
    report = allocator.usage_report()
    assert report["total_ports"] == 31
    assert report["container_ports"] == [25570]
    assert report["database_ports"] == [25565]
    assert report["used_ports"] == 2
    assert report["available_ports"] == 29
