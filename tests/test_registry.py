"""
Tests for shepherd/registry.py - fleet membership and reconciliation.

Tests cover:
- Manual add: probe required, duplicate address returns existing record
- One missed probe flips an agent Offline, keeping its label
- A hung agent never delays the others
- Overlapping cycles are skipped
- Label assignment from reported machine names (shared name -> duplicate)
- Lookup by id, address, or label
"""

import threading
import time

import pytest

from shepherd.registry import (
    CycleReport,
    FleetRegistry,
    ProbeResult,
    RegistrationError,
    UnknownAgent,
    normalize_address,
)
from shepherd.types import AgentState

A = "10.0.0.5:3001"
B = "10.0.0.6:3001"
C = "10.0.0.7:3001"


@pytest.fixture
def registry(fake_fleet):
    return FleetRegistry(
        client_factory=fake_fleet,
        status_timeout=0.2,
        identity_timeout=0.2,
        cycle_grace_s=0.2,
    )


class TestNormalizeAddress:

    @pytest.mark.parametrize("raw,expected", [
        ("10.0.0.5", "10.0.0.5:3001"),
        ("10.0.0.5:4000", "10.0.0.5:4000"),
        ("http://10.0.0.5:3001/", "10.0.0.5:3001"),
        ("  ws-a.local ", "ws-a.local:3001"),
    ])
    def test_normalize(self, raw, expected):
        assert normalize_address(raw) == expected

    def test_empty(self):
        with pytest.raises(ValueError):
            normalize_address("http://")


class TestAddAgent:

    def test_add_reachable(self, registry, fake_fleet):
        fake_fleet.up(A, "WS-A")
        record = registry.add_agent("10.0.0.5")

        assert record.address == A
        assert record.state == AgentState.ONLINE
        assert record.display_name == "WS-A"
        assert record.fleet_label == "Shepherd-01"
        assert record.added_via == "manual"
        assert record.last_seen_at is not None
        fake_fleet.clients[A].close.assert_called_once()

    def test_add_unreachable_creates_nothing(self, registry):
        with pytest.raises(RegistrationError) as ctx:
            registry.add_agent(A)
        assert ctx.value.address == A
        assert registry.snapshot() == []

    def test_add_twice_returns_existing(self, registry, fake_fleet):
        fake_fleet.up(A, "WS-A")
        first = registry.add_agent(A)
        fake_fleet.down(A)   # second add must not probe
        second = registry.add_agent("http://10.0.0.5:3001")
        assert first.id == second.id
        assert len(registry.snapshot()) == 1

    def test_identity_failure_is_not_fatal(self, registry, fake_fleet):
        fake_fleet.up(A, None)
        record = registry.add_agent(A)
        assert record.state == AgentState.ONLINE
        assert record.fleet_label is None
        assert record.reported_machine_name is None

    def test_ids_are_unique(self, registry, fake_fleet):
        for address in (A, B, C):
            fake_fleet.up(address, address)
            registry.add_agent(address)
        assert [r.id for r in registry.snapshot()] == ["1", "2", "3"]

    def test_track_does_not_contact_agent(self, registry, fake_fleet):
        record = registry.track(A)
        assert record.state == AgentState.UNKNOWN
        assert record.added_via == "config"
        assert A not in fake_fleet.clients

    def test_discovered_then_manual_add_is_one_record(self, registry, fake_fleet):
        fake_fleet.up(A, "WS-A")
        assert registry.admit_discovered(ProbeResult(A, online=True)) is not None
        assert registry.admit_discovered(ProbeResult(A, online=True)) is None
        registry.add_agent(A)
        assert len(registry.snapshot()) == 1


class TestLookup:

    @pytest.fixture
    def populated(self, registry, fake_fleet):
        fake_fleet.up(A, "WS-A")
        fake_fleet.up(B, "WS-B")
        registry.add_agent(A)
        registry.add_agent(B)
        return registry

    @pytest.mark.parametrize("ref", ["2", B, "10.0.0.6", "http://10.0.0.6:3001", "Shepherd-02"])
    def test_get(self, populated, ref):
        assert populated.get(ref).address == B

    def test_unknown(self, populated):
        with pytest.raises(UnknownAgent) as ctx:
            populated.get("nope")
        assert str(ctx.value) == "Unknown agent: nope"

    def test_shared_label_is_not_a_unique_ref(self, registry, fake_fleet):
        fake_fleet.up(A, "FLOOR2-PC")
        fake_fleet.up(B, "FLOOR2-PC")
        registry.add_agent(A)
        registry.add_agent(B)
        with pytest.raises(UnknownAgent):
            registry.get("Shepherd-01")

    def test_remove(self, populated):
        removed = populated.remove_agent("Shepherd-01")
        assert removed.address == A
        assert populated.addresses() == {B}
        with pytest.raises(UnknownAgent):
            populated.remove_agent(A)

    def test_returned_records_are_copies(self, populated):
        record = populated.get(A)
        record.fleet_label = "tampered"
        assert populated.get(A).fleet_label == "Shepherd-01"


class TestLabels:

    def test_shared_machine_name_reported_as_duplicate(self, registry, fake_fleet):
        fake_fleet.up(A, "FLOOR2-PC")
        fake_fleet.up(B, "FLOOR2-PC")
        fake_fleet.up(C, "WS-C")

        assert registry.add_agent(A).fleet_label == "Shepherd-01"
        assert registry.add_agent(B).fleet_label == "Shepherd-01"
        assert registry.add_agent(C).fleet_label == "Shepherd-02"

        status = registry.fleet_status()
        assert status.duplicates == {"Shepherd-01": [A, B]}

    def test_label_stable_across_cycles(self, registry, fake_fleet):
        fake_fleet.up(A, "WS-A")
        registry.add_agent(A)
        for _ in range(3):
            registry.run_cycle()
        assert registry.get(A).fleet_label == "Shepherd-01"

    def test_label_kept_when_machine_renamed(self, registry, fake_fleet):
        fake_fleet.up(A, "WS-A")
        registry.add_agent(A)
        fake_fleet.up(A, "WS-A-RENAMED")
        registry.run_cycle()
        record = registry.get(A)
        assert record.reported_machine_name == "WS-A-RENAMED"
        assert record.fleet_label == "Shepherd-01"

    def test_numbers_not_reused_after_remove(self, registry, fake_fleet):
        fake_fleet.up(A, "WS-A")
        fake_fleet.up(B, "WS-B")
        fake_fleet.up(C, "WS-C")
        registry.add_agent(A)
        registry.add_agent(B)
        registry.remove_agent(B)
        assert registry.add_agent(C).fleet_label == "Shepherd-03"

    def test_label_assigned_on_first_cycle_for_discovered(self, registry, fake_fleet):
        fake_fleet.up(A, "WS-A")
        record = registry.admit_discovered(ProbeResult(A, online=True))
        assert record.added_via == "discovery"
        assert record.fleet_label is None
        registry.run_cycle()
        assert registry.get(A).fleet_label == "Shepherd-01"


class TestReconciliation:

    def test_configured_agent_goes_online(self, registry, fake_fleet):
        registry.track(A)
        fake_fleet.up(A, "WS-A")
        report = registry.run_cycle()
        assert report.states == {A: AgentState.ONLINE}
        assert report.transitions == [(A, "unknown", "online")]

    def test_single_missed_poll_flips_offline(self, registry, fake_fleet):
        fake_fleet.up(A, "WS-A")
        registry.add_agent(A)

        fake_fleet.down(A)
        report = registry.run_cycle()

        record = registry.get(A)
        assert record.state == AgentState.OFFLINE
        assert report.transitions == [(A, "online", "offline")]
        # Offline keeps the last reported identity for display
        assert record.reported_machine_name == "WS-A"
        assert record.fleet_label == "Shepherd-01"

        fake_fleet.up(A, "WS-A")
        registry.run_cycle()
        assert registry.get(A).state == AgentState.ONLINE

    def test_hung_agent_does_not_delay_others(self, registry, fake_fleet):
        release = threading.Event()
        fake_fleet.up(A, "WS-A")
        fake_fleet.up(B, "WS-B")
        registry.track(A)
        registry.track(B)
        fake_fleet.status_hooks[B] = lambda: release.wait(10)

        try:
            started = time.monotonic()
            report = registry.run_cycle()
            elapsed = time.monotonic() - started
        finally:
            release.set()

        assert elapsed < 3
        assert registry.get(A).state == AgentState.ONLINE
        assert registry.get(B).state == AgentState.OFFLINE
        assert report.online == 1 and report.offline == 1

    def test_more_slow_agents_than_workers(self, fake_fleet):
        registry = FleetRegistry(
            client_factory=fake_fleet,
            status_timeout=0.2,
            identity_timeout=0.2,
            cycle_grace_s=0.2,
            poll_workers=2,
        )
        powered_off = [f"10.0.0.{n}:3001" for n in range(1, 5)]
        healthy = "10.0.0.9:3001"
        for address in powered_off:
            registry.track(address)
            # Unreachable agents burn their whole status timeout
            fake_fleet.status_hooks[address] = lambda: time.sleep(0.2)
        fake_fleet.up(healthy, "WS-9")
        registry.track(healthy)

        report = registry.run_cycle()

        assert registry.get(healthy).state == AgentState.ONLINE
        assert all(registry.get(a).state == AgentState.OFFLINE for a in powered_off)
        assert report.online == 1 and report.offline == 4

    def test_hung_worker_does_not_starve_queue(self, fake_fleet):
        release = threading.Event()
        registry = FleetRegistry(
            client_factory=fake_fleet,
            status_timeout=0.2,
            identity_timeout=0.2,
            cycle_grace_s=0.2,
            poll_workers=2,
        )
        hung = "10.0.0.1:3001"
        others = [f"10.0.0.{n}:3001" for n in range(2, 6)]
        for address in [hung] + others:
            fake_fleet.up(address, address)
            registry.track(address)
        fake_fleet.status_hooks[hung] = lambda: release.wait(10)

        try:
            report = registry.run_cycle()
        finally:
            release.set()

        assert registry.get(hung).state == AgentState.OFFLINE
        assert all(registry.get(a).state == AgentState.ONLINE for a in others)
        assert report.offline == 1

    def test_overlapping_cycle_skipped(self, registry, fake_fleet):
        entered = threading.Event()
        release = threading.Event()
        registry.cycle_grace_s = 10
        fake_fleet.up(A, "WS-A")
        registry.track(A)

        def block():
            entered.set()
            release.wait(10)

        fake_fleet.status_hooks[A] = block
        first = threading.Thread(target=registry.run_cycle, daemon=True)
        first.start()
        try:
            assert entered.wait(5)
            assert registry.run_cycle() is None
        finally:
            release.set()
            first.join(5)

        assert registry.get(A).state == AgentState.ONLINE

    def test_removed_during_cycle_stays_removed(self, registry, fake_fleet):
        fake_fleet.up(A, "WS-A")
        registry.add_agent(A)
        fake_fleet.status_hooks[A] = lambda: registry.remove_agent(A)
        report = registry.run_cycle()
        assert registry.snapshot() == []
        assert report.states == {}

    def test_empty_registry(self, registry):
        report = registry.run_cycle()
        assert isinstance(report, CycleReport)
        assert report.finished_at is not None
        assert report.to_dict()["online"] == 0

    def test_background_loop(self, registry, fake_fleet):
        fake_fleet.up(A, "WS-A")
        registry.track(A)
        registry.start(interval=0.05)
        try:
            deadline = time.monotonic() + 5
            while registry.last_cycle is None and time.monotonic() < deadline:
                time.sleep(0.01)
        finally:
            registry.stop(timeout=5)
        assert registry.get(A).state == AgentState.ONLINE
