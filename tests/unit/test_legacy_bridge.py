from __future__ import annotations

import json

import pytest

from bridge.legacy import BridgeTimeoutError, LegacyBridge, MigrationError, parse_legacy_record
from persistence.codec import serialize
from state.models import UpdateSource


class Recorder:
    """Legacy component stub exposing the `on_state_change` protocol."""

    def __init__(self) -> None:
        self.events = []

    def on_state_change(self, event_type, data):
        self.events.append((event_type, data))

    def names(self):
        return [name for name, _ in self.events]


@pytest.fixture
async def ready_store(store):
    assert await store.init() is True
    yield store
    await store.close()


@pytest.fixture
async def bridge(ready_store, backend):
    b = LegacyBridge(ready_store, backend, timeout=1)
    assert await b.init() is True
    return b


def _without_sync(state):
    return {k: v for k, v in state.items() if k != "lastSync"}


# --------------- Record parsing ---------------
@pytest.mark.parametrize(
    "key,record,expected",
    [
        ("satspay_user", {"id": "u42", "name": "Ana"}, {"currentUser": {"id": "u42", "name": "Ana"}, "isAuthenticated": True}),
        ("satspay_user", None, {"isAuthenticated": False}),
        ("satspay_transactions", [{"id": "tx1"}], {"transactions": [{"id": "tx1"}]}),
        ("satspay_autopay", [{"id": "r1", "amount": 10}], {"autopayRules": [{"id": "r1", "amount": 10}]}),
        (
            "satspay_wallet",
            {"connected": True, "type": "lightning", "balance": {"btc": 0.5, "usd": 20000}},
            {
                "walletConnected": True,
                "connectedWallet": {"connected": True, "type": "lightning", "balance": {"btc": 0.5, "usd": 20000}},
                "balance": {"btc": 0.5, "usd": 20000},
            },
        ),
        ("satspay_wallet", {"connected": False}, {}),
        ("satspay_navigation", {"currentSection": "auth"}, {"currentSection": "home"}),
        ("satspay_navigation", {"currentSection": "wallet"}, {"currentSection": "wallet"}),
        ("satspay_navigation", {}, {}),
    ],
)
def test_parse_legacy_record(key, record, expected):
    assert parse_legacy_record(key, json.dumps(record)) == expected


def test_parse_legacy_record_unwraps_envelopes():
    raw = serialize([{"id": "tx1"}], schema_version="1.0.0", timestamp=1)
    assert parse_legacy_record("satspay_transactions", raw) == {"transactions": [{"id": "tx1"}]}


@pytest.mark.parametrize(
    "key,raw",
    [
        ("satspay_transactions", "{broken"),
        ("satspay_transactions", json.dumps({"id": "tx1"})),
        ("satspay_autopay", "plain text"),
        ("satspay_user", json.dumps(["not", "an", "object"])),
        ("satspay_user", json.dumps({"name": "missing id"})),
        ("satspay_wallet", json.dumps([1])),
        ("satspay_wallet", json.dumps({"balance": {"btc": -1, "usd": 0}})),
        ("satspay_navigation", json.dumps("home")),
        ("satspay_unknown", "{}"),
    ],
)
def test_parse_legacy_record_rejects_malformed(key, raw):
    with pytest.raises(MigrationError):
        parse_legacy_record(key, raw)


# --------------- Migration ---------------
async def test_init_migrates_legacy_records(store, backend, manager):
    backend.set("satspay_user", json.dumps({"id": "u42", "name": "Ana"}))
    backend.set("satspay_transactions", json.dumps([{"id": "tx1", "amount": 0.001}]))
    backend.set("satspay_navigation", json.dumps({"currentSection": "auth"}))
    assert await store.init() is True

    b = LegacyBridge(store, backend, timeout=1)
    assert await b.init() is True

    assert store.get_state("currentUser") == {"id": "u42", "name": "Ana"}
    assert store.get_state("isAuthenticated") is True
    assert store.get_state("transactions") == [{"id": "tx1", "amount": 0.001}]
    assert store.get_state("currentSection") == "home"
    assert set(b.last_migration) == {"currentUser", "isAuthenticated", "transactions", "currentSection"}
    assert (await manager.load("currentUser"))["id"] == "u42"
    await store.close()


async def test_migration_is_idempotent(store, backend):
    backend.set("satspay_transactions", json.dumps([{"id": "tx1"}]))
    backend.set("satspay_wallet", json.dumps({"connected": True, "balance": {"btc": 1, "usd": 2}}))
    assert await store.init() is True
    b = LegacyBridge(store, backend, timeout=1)

    first = await b.migrate_existing_data()
    after_first = _without_sync(store.get_state())
    second = await b.migrate_existing_data()

    assert first == second
    assert _without_sync(store.get_state()) == after_first
    await store.close()


async def test_malformed_domain_is_skipped(store, backend):
    backend.set("satspay_transactions", "{broken")
    backend.set("satspay_wallet", json.dumps({"connected": True}))
    assert await store.init() is True

    merged = await LegacyBridge(store, backend, timeout=1).migrate_existing_data()

    assert merged == {"walletConnected": True, "connectedWallet": {"connected": True}}
    assert store.get_state("transactions") == []
    assert store.get_state("walletConnected") is True
    await store.close()


async def test_nothing_to_migrate(bridge):
    assert await bridge.migrate_existing_data() == {}
    assert bridge.last_migration == {}


# --------------- Sync ---------------
async def test_init_times_out_when_store_never_initializes(store, backend):
    b = LegacyBridge(store, backend, timeout=0.01)
    with pytest.raises(BridgeTimeoutError):
        await b.init()
    assert not b.initialized


async def test_component_sync_does_not_echo_back(bridge, ready_store):
    component = Recorder()
    bridge.register_component("wallet-panel", component)

    ok = await bridge.sync_from_component("wallet", {"connected": True, "wallet": {"type": "onchain"}})
    assert ok is True
    assert ready_store.get_state("walletConnected") is True
    assert ready_store.get_state("connectedWallet") == {"type": "onchain"}
    assert component.events == []

    await ready_store.set_state({"walletConnected": False})
    assert component.names() == ["walletConnectionChanged"]
    assert component.events[0][1] == {"connected": False, "previousValue": True, "wallet": {"type": "onchain"}}


async def test_store_changes_fan_out_to_every_domain(bridge, ready_store):
    component = Recorder()
    bridge.register_component("shell", component)

    await ready_store.set_state(
        {"balance": {"btc": 1, "usd": 2}, "transactions": [{"id": "t"}], "currentSection": "wallet"},
        source=UpdateSource.COMPONENT,
    )
    assert sorted(component.names()) == ["balanceChanged", "navigationChanged", "transactionsChanged"]
    nav = dict(component.events)["navigationChanged"]
    assert nav == {"currentSection": "wallet", "previousSection": "home"}


async def test_navigation_sync_keeps_history_when_absent(bridge, ready_store):
    await ready_store.set_state({"navigationHistory": ["home"]})
    assert await bridge.sync_from_component("navigation", {"currentSection": "wallet", "previousSection": "home"})
    assert ready_store.get_state("currentSection") == "wallet"
    assert ready_store.get_state("navigationHistory") == ["home"]

    assert await bridge.sync_from_component("navigation", {"currentSection": "home", "history": ["home", "wallet"]})
    assert ready_store.get_state("navigationHistory") == ["home", "wallet"]


async def test_auth_sync_maps_user_fields(bridge, ready_store):
    assert await bridge.sync_from_component("auth", {"user": {"id": "u1"}, "isAuthenticated": True})
    assert ready_store.get_state("currentUser") == {"id": "u1"}
    assert ready_store.get_state("isAuthenticated") is True


async def test_sync_rejections(bridge):
    assert await bridge.sync_from_component("unknown", {}) is False
    assert await bridge.sync_from_component("balance", {"balance": {"btc": -1, "usd": 0}}) is False


async def test_component_handlers(bridge):
    calls = []
    bridge.register_component("fn", lambda event, data: calls.append(event))

    def broken(event, data):
        raise RuntimeError("legacy bug")

    bridge.register_component("broken", broken)
    bridge.notify("customEvent", {})
    assert calls == ["customEvent"]

    with pytest.raises(TypeError):
        bridge.register_component("bad", object())
    assert bridge.unregister_component("fn") is True
    assert bridge.unregister_component("fn") is False


# --------------- Component facade ---------------
async def test_facade_requires_initialization(ready_store, backend):
    b = LegacyBridge(ready_store, backend)
    assert await b.update_state_from_component("x", {"loading": True}) is False
    assert b.get_state_for_component("x") is None
    assert b.create_state_binding("x", "loading", lambda *a: None) is None


async def test_facade_reads_and_writes(bridge, ready_store):
    seen = []
    bridge.register_component("rec", lambda event, data: seen.append(event))

    assert await bridge.update_state_from_component("send-form", {"balance": {"btc": 3, "usd": 9}}) is True
    assert ready_store.get_state("balance") == {"btc": 3, "usd": 9}
    assert seen == ["balanceChanged"]

    assert bridge.get_state_for_component("x", ["balance", "loading"]) == {
        "balance": {"btc": 3, "usd": 9},
        "loading": False,
    }
    assert bridge.get_state_for_component("x")["balance"] == {"btc": 3, "usd": 9}


async def test_binding_survives_callback_errors(bridge, ready_store):
    calls = []

    def flaky(value, previous, source):
        calls.append(value)
        raise RuntimeError("legacy bug")

    unbind = bridge.create_state_binding("panel", "loading", flaky)
    await ready_store.set_state({"loading": True})
    await ready_store.set_state({"loading": False})
    assert calls == [True, False]

    assert unbind() is True


async def test_reset_tears_down_sync(bridge, ready_store):
    component = Recorder()
    bridge.register_component("c", component)
    await ready_store.set_state({"balance": {"btc": 1, "usd": 1}})
    component.events.clear()

    assert await bridge.reset(confirm=False) is True
    assert not bridge.initialized
    assert ready_store.get_state("balance") == {"btc": 0, "usd": 0}
    assert component.events == []

    stats = bridge.get_stats()
    assert stats["syncHandlers"] == 0
    assert stats["legacyComponents"] == 1
    assert stats["stateManagerStats"]["initialized"] is True
