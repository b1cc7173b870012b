"""
Identity Provider - Stable machine identity for an agent host.

The agent id is a slug of (hostname, platform, arch): lower-case, with every
run of non-alphanumeric characters collapsed to a single "-". Same inputs,
same id, so it is safe as a map key or URL path segment.
"""

import platform
import re
import socket
import sys
from datetime import datetime
from typing import Optional

from shepherd.types import IdentitySnapshot

_SLUG_RE = re.compile(r"[^a-z0-9]+")


def make_agent_id(hostname: str, platform_name: str, arch: str) -> str:
    """Deterministic, case-normalized slug for a host."""
    raw = "-".join(part for part in (hostname, platform_name, arch) if part)
    return _SLUG_RE.sub("-", raw.lower()).strip("-") or "unknown-agent"


class IdentityProvider:
    """Derives the identity snapshot reported by GET /pc-info."""

    def __init__(
        self,
        hostname: Optional[str] = None,
        platform_name: Optional[str] = None,
        arch: Optional[str] = None,
    ):
        self.hostname = hostname or socket.gethostname()
        self.platform_name = platform_name or sys.platform
        self.arch = arch or platform.machine() or "unknown"

    @property
    def agent_id(self) -> str:
        return make_agent_id(self.hostname, self.platform_name, self.arch)

    def snapshot(self) -> IdentitySnapshot:
        return IdentitySnapshot(
            pc_name=self.hostname,
            agent_id=self.agent_id,
            display_name=f"{self.hostname} ({self.platform_name}/{self.arch})",
            platform=self.platform_name,
            architecture=self.arch,
            timestamp=datetime.now().isoformat(),
        )
