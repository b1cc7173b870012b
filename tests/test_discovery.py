"""
Tests for shepherd/discovery.py - subnet scanning.
"""

from shepherd.discovery import SubnetScanner, candidate_addresses, discover
from shepherd.registry import FleetRegistry
from shepherd.types import AgentState


def test_candidates_cover_1_to_254():
    addresses = candidate_addresses(["192.168.1."], 3001)
    assert len(addresses) == 254
    assert addresses[0] == "192.168.1.1:3001"
    assert addresses[-1] == "192.168.1.254:3001"


def test_candidates_add_missing_dot():
    assert candidate_addresses(["10.0.0"], 4000, hosts=[7]) == ["10.0.0.7:4000"]


class TestScan:

    def test_hits_sorted(self, fake_fleet):
        fake_fleet.up("10.0.0.9:3001", "WS-9")
        fake_fleet.up("10.0.0.10:3001", "WS-10")
        scanner = SubnetScanner(fake_fleet, prefixes=["10.0.0."], timeout=0.1, workers=8)

        hits = scanner.scan()

        assert [h.address for h in hits] == ["10.0.0.10:3001", "10.0.0.9:3001"]
        assert all(h.online for h in hits)
        assert len(fake_fleet.clients) == 254

    def test_excluded_address_not_contacted(self, fake_fleet):
        fake_fleet.up("10.0.0.9:3001", "WS-9")
        scanner = SubnetScanner(fake_fleet, prefixes=["10.0.0."], timeout=0.1, workers=8)
        assert scanner.scan(exclude={"10.0.0.9:3001"}) == []
        assert "10.0.0.9:3001" not in fake_fleet.clients


class TestDiscover:

    def test_only_new_members_admitted(self, fake_fleet):
        fake_fleet.up("10.0.0.5:3001", "WS-5")
        fake_fleet.up("10.0.0.9:3001", "WS-9")
        registry = FleetRegistry(client_factory=fake_fleet)
        registry.add_agent("10.0.0.5:3001")
        scanner = SubnetScanner(fake_fleet, prefixes=["10.0.0."], timeout=0.1, workers=8)

        admitted = discover(registry, scanner)

        assert [r.address for r in admitted] == ["10.0.0.9:3001"]
        assert admitted[0].added_via == "discovery"
        assert admitted[0].state == AgentState.ONLINE
        assert len(registry.snapshot()) == 2

        # A second scan finds nothing new
        assert discover(registry, scanner) == []
