import pytest

from config import PROXY_LABEL
from errors import UnsupportedProxyTypeError, ValidationError
from proxy_registry import HealthStatus, ProxyRegistry, ProxyType, infer_proxy_type


DEFINITIONS = [
    {"id": "velocity-main", "type": "velocity", "host": "velocity", "priority": 100, "tags": ["eu"]},
    {"id": "bungee", "type": "bungeecord", "host": "bungee", "priority": 80, "containerName": "bungee-1"},
]


@pytest.fixture
def registry(containers):
    return ProxyRegistry(containers, DEFINITIONS)


def test_list_orders_by_priority_and_filters(registry):
    assert [p.id for p in registry.list()] == ["velocity-main", "bungee"]
    assert [p.id for p in registry.get_by_type("bungeecord")] == ["bungee"]
    assert [p.id for p in registry.list(tag="eu")] == ["velocity-main"]
    assert registry.list(health="healthy") == []
    with pytest.raises(ValidationError):
        registry.list(health="sparkling")
    with pytest.raises(UnsupportedProxyTypeError):
        registry.list(proxy_type="nginx")


def test_definitions_accept_both_key_styles(registry):
    bungee = registry.get("bungee")
    assert bungee.container_name == "bungee-1"
    assert bungee.container == "bungee-1"
    assert bungee.supports("legacy-forwarding")
    assert not bungee.supports("modern-forwarding")
    assert registry.get("velocity-main").container == "velocity"


def test_get_returns_a_copy(registry):
    proxy = registry.get("velocity-main")
    proxy.enabled = False
    assert registry.get("velocity-main").enabled


def test_upsert_keeps_health_and_counts(registry):
    registry.record_health("velocity-main", HealthStatus.HEALTHY, ["Reachable in 3ms"])
    registry.adjust_server_count("velocity-main", 2)

    created = registry.upsert({"id": "velocity-main", "type": "velocity", "host": "velocity", "priority": 10})

    proxy = registry.get("velocity-main")
    assert created is False
    assert proxy.priority == 10
    assert proxy.health_status == HealthStatus.HEALTHY
    assert proxy.current_servers == 2


def test_server_count_never_negative(registry):
    registry.adjust_server_count("bungee", -3)
    assert registry.get("bungee").current_servers == 0


def test_enable_disable_remove(registry):
    assert registry.set_enabled("bungee", False)
    assert [p.id for p in registry.get_enabled()] == ["velocity-main"]
    assert not registry.set_enabled("nope", True)
    assert registry.remove("bungee")
    assert not registry.remove("bungee")
    assert len(registry) == 1


def test_unknown_type_is_rejected(registry):
    with pytest.raises(UnsupportedProxyTypeError):
        registry.upsert({"id": "edge", "type": "nginx"})
    with pytest.raises(ValidationError):
        registry.upsert({"type": "velocity"})


def test_statistics(registry):
    registry.record_health("bungee", HealthStatus.UNHEALTHY)
    stats = registry.statistics()
    assert stats["total_proxies"] == 2
    assert stats["enabled_proxies"] == 2
    assert stats["counts_by_type"]["velocity"] == 1
    assert stats["counts_by_type"]["rusty-connector"] == 0
    assert stats["counts_by_health"] == {"healthy": 0, "degraded": 0, "unhealthy": 1, "unknown": 1}


def test_scan_registers_new_proxies_disabled(registry, containers):
    containers.add("velocity")
    containers.add("lobby-waterfall", image="ghcr.io/example/waterfall:latest")
    containers.add("edge", image="ghcr.io/example/proxy:1", labels={PROXY_LABEL: "velocity"})
    containers.add("mc-abc123", image="itzg/minecraft-server:latest")

    result = registry.scan_and_register("local")

    assert result.discovered == ["velocity", "lobby-waterfall", "edge"]
    assert result.registered == ["lobby-waterfall", "edge"]
    assert result.marked_unhealthy == ["bungee"]

    waterfall = registry.get("lobby-waterfall")
    assert waterfall.type == ProxyType.WATERFALL
    assert not waterfall.enabled
    assert waterfall.discovered
    assert waterfall.network_name == "fleetgate"
    assert registry.get("edge").type == ProxyType.VELOCITY

    bungee = registry.get("bungee")
    assert bungee.health_status == HealthStatus.UNHEALTHY
    assert bungee.health_details == ["Container not found during discovery scan"]


def test_rescan_is_idempotent(registry, containers):
    containers.add("lobby-waterfall", image="waterfall")
    registry.scan_and_register("local")
    second = registry.scan_and_register("local")
    assert second.registered == []
    assert second.marked_unhealthy == []
    assert len(registry) == 3


def test_scan_never_replaces_a_defined_proxy(containers):
    registry = ProxyRegistry(containers, [
        {"id": "velocity-main", "type": "velocity", "host": "velocity", "priority": 100,
         "config_path": "/proxies/velocity/velocity.toml"},
    ])
    containers.add("velocity-main", image="itzg/mc-proxy:velocity")

    result = registry.scan_and_register("local")

    assert result.registered == []
    assert result.errors == ["velocity-main: id already used by proxy 'velocity-main' (container velocity)"]
    proxy = registry.get("velocity-main")
    assert proxy.enabled
    assert proxy.priority == 100
    assert proxy.config_path == "/proxies/velocity/velocity.toml"
    assert not proxy.discovered
    assert len(registry) == 1


def test_scan_errors_are_reported(registry, containers):
    containers.failures["list_containers"] = RuntimeError("socket closed")
    result = registry.scan_and_register("local")
    assert result.errors == ["socket closed"]
    assert registry.get("bungee").health_status == HealthStatus.UNKNOWN


def test_infer_proxy_type():
    assert infer_proxy_type({"name": "proxy", "image": "itzg/bungeecord"}) == ProxyType.BUNGEECORD
    assert infer_proxy_type({"name": "velocity-rusty", "image": "x"}) == ProxyType.RUSTY_CONNECTOR
    assert infer_proxy_type({"name": "p", "image": "x", "labels": {PROXY_LABEL: "gopher"}}) is None
    assert infer_proxy_type({"name": "web", "image": "nginx"}) is None


def test_load_definitions_skips_bad_entries(tmp_path, containers):
    path = tmp_path / "proxies.yaml"
    path.write_text(
        "proxies:\n"
        "  - id: rusty\n"
        "    type: rusty-connector\n"
        "    host: velocity-rusty\n"
        "    priority: 110\n"
        "  - id: broken\n"
        "    type: haproxy\n",
        encoding="utf-8",
    )
    registry = ProxyRegistry(containers)

    assert registry.load_definitions(path) == 1
    assert registry.get("rusty").supports("server-families")
    assert registry.load_definitions(tmp_path / "missing.yaml") == 0
