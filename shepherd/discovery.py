"""
Subnet discovery - find agents on the common private /24 networks.

Probes every host suffix 1-254 under each configured prefix with a short
status-probe timeout and a bounded worker pool. Discovery only reads the
registry's member set up front; admission goes through the registry, which
re-checks membership under its own lock so a concurrent manual add of the
same address never produces two records.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Iterable, List, Optional, Sequence

from shepherd.client import AgentClient, AgentError
from shepherd.config import DEFAULT_SCAN_PREFIXES
from shepherd.registry import DEFAULT_AGENT_PORT, FleetRegistry, ProbeResult
from shepherd.types import AgentRecord

logger = logging.getLogger("shepherd.discovery")

HOST_SUFFIXES = range(1, 255)


def candidate_addresses(
    prefixes: Sequence[str],
    port: int = DEFAULT_AGENT_PORT,
    hosts: Iterable[int] = HOST_SUFFIXES,
) -> List[str]:
    """Every "prefix + host:port" address, prefix by prefix."""
    hosts = list(hosts)
    addresses = []
    for prefix in prefixes:
        if not prefix.endswith("."):
            prefix += "."
        addresses.extend(f"{prefix}{host}:{port}" for host in hosts)
    return addresses


class SubnetScanner:
    """
    Bounded-concurrency status probe over a candidate address space.

    Args:
        client_factory: Builds an AgentClient for an address
        prefixes: Network prefixes like "192.168.1."
        port: Agent port
        timeout: Per-probe timeout in seconds
        workers: Max concurrent probes
    """

    def __init__(
        self,
        client_factory: Optional[Callable[[str], AgentClient]] = None,
        prefixes: Optional[Sequence[str]] = None,
        port: int = DEFAULT_AGENT_PORT,
        timeout: float = 1.5,
        workers: int = 64,
    ):
        self._client_factory = client_factory or AgentClient
        self.prefixes = list(prefixes) if prefixes is not None else list(DEFAULT_SCAN_PREFIXES)
        self.port = port
        self.timeout = timeout
        self.workers = workers

    def _probe(self, address: str) -> Optional[ProbeResult]:
        client = self._client_factory(address)
        try:
            status = client.get_status(timeout=self.timeout)
            return ProbeResult(address, online=True, status=status)
        except AgentError:
            return None
        finally:
            client.close()

    def scan(self, exclude: Iterable[str] = ()) -> List[ProbeResult]:
        """Probe every candidate not in `exclude`. Returns the hits, sorted by address."""
        exclude = set(exclude)
        candidates = [a for a in candidate_addresses(self.prefixes, self.port) if a not in exclude]
        logger.info(f"Scanning {len(candidates)} addresses ({', '.join(self.prefixes)}) on port {self.port}")

        hits: List[ProbeResult] = []
        with ThreadPoolExecutor(max_workers=max(1, self.workers)) as pool:
            futures = {pool.submit(self._probe, a): a for a in candidates}
            for future in as_completed(futures):
                try:
                    result = future.result()
                except Exception as e:
                    logger.error(f"Error probing {futures[future]}: {e}")
                    continue
                if result is not None:
                    logger.info(f"Found agent at {result.address}")
                    hits.append(result)

        return sorted(hits, key=lambda r: r.address)


def discover(registry: FleetRegistry, scanner: SubnetScanner) -> List[AgentRecord]:
    """Scan, then admit every hit that is not already a member."""
    hits = scanner.scan(exclude=registry.addresses())
    admitted = []
    for result in hits:
        record = registry.admit_discovered(result)
        if record is not None:
            admitted.append(record)
    logger.info(f"Discovery admitted {len(admitted)} new agent(s)")
    return admitted
