"""
Shared pytest fixtures for CI-safe testing.

Nothing here touches the real OS: subprocess seams are fakes and agent HTTP
calls go through mocked clients.
"""

import sys
from pathlib import Path

# Add project root to sys.path for imports
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from typing import Callable, Dict, List, Optional
from unittest.mock import MagicMock

import pytest

from shepherd.client import AgentUnavailable
from shepherd.executor import CommandResult
from shepherd.types import IdentitySnapshot, StatusSnapshot


class FakeRunner:
    """
    Stands in for subprocess.run.

    `responses` maps a predicate-friendly key (first two argv words joined by
    a space, or the first word) to a CommandResult, an exception, or a
    callable taking argv.
    """

    def __init__(self, responses: Optional[Dict[str, object]] = None):
        self.responses = responses or {}
        self.calls: List[List[str]] = []

    def __call__(self, args, timeout):
        args = list(args)
        self.calls.append(args)
        for key in self._keys(args):
            if key in self.responses:
                response = self.responses[key]
                if isinstance(response, BaseException):
                    raise response
                if callable(response):
                    return response(args)
                return response
        return CommandResult(0, "", "")

    @staticmethod
    def _keys(args: List[str]) -> List[str]:
        keys = []
        # PowerShell: key on the cmdlet name ("Get-NetAdapter", "Disable-NetAdapter")
        if args and args[0].lower().startswith("powershell"):
            keys.append(args[-1].split()[0])
        keys.append(" ".join(args[:3]))
        keys.append(" ".join(args[:2]))
        keys.append(args[0] if args else "")
        return keys


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


def make_status(hostname: str = "ws-a") -> StatusSnapshot:
    return StatusSnapshot(
        hostname=hostname,
        platform="win32",
        arch="AMD64",
        uptime_seconds=1200.0,
        total_memory=16 * 1024 ** 3,
        free_memory=8 * 1024 ** 3,
        load_average=[0.1, 0.2, 0.3],
        network_interfaces={},
    )


def make_identity(pc_name: str) -> IdentitySnapshot:
    return IdentitySnapshot(
        pc_name=pc_name,
        agent_id=f"{pc_name.lower()}-win32-amd64",
        display_name=f"{pc_name} (win32/AMD64)",
        platform="win32",
        architecture="AMD64",
    )


class FakeFleet:
    """
    Client factory backed by a table of fake agents.

    fleet.up("10.0.0.5:3001", "FLOOR2-PC") makes that address answer;
    anything else raises AgentUnavailable.
    """

    def __init__(self):
        self.agents: Dict[str, Optional[str]] = {}
        self.status_hooks: Dict[str, Callable[[], None]] = {}
        self.clients: Dict[str, MagicMock] = {}

    def up(self, address: str, machine_name: Optional[str] = None):
        self.agents[address] = machine_name

    def down(self, address: str):
        self.agents.pop(address, None)

    def __call__(self, address: str) -> MagicMock:
        client = MagicMock(name=f"AgentClient({address})")
        client.address = address

        def get_status(timeout=None):
            hook = self.status_hooks.get(address)
            if hook:
                hook()
            if address not in self.agents:
                raise AgentUnavailable(address, f"http://{address}/status")
            return make_status(self.agents[address] or address)

        def get_identity(timeout=None):
            if address not in self.agents or not self.agents[address]:
                raise AgentUnavailable(address, f"http://{address}/pc-info")
            return make_identity(self.agents[address])

        client.get_status.side_effect = get_status
        client.get_identity.side_effect = get_identity
        self.clients[address] = client
        return client


@pytest.fixture
def fake_fleet() -> FakeFleet:
    return FakeFleet()


# Skip markers for conditional test execution
def pytest_configure(config):
    """Add custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests (real sockets)"
    )
