"""
Fleet Registry - The controller's set of known agents and their liveness.

The registry is the single owner of fleet state:
1. Admits agents (manual add after a reachability probe, or discovery hits)
2. Runs reconciliation cycles: one concurrent probe per agent
3. Assigns fleet labels from reported machine names

State per record:
    unknown -> online | offline, then online <-> offline.
    Each cycle's probe result fully decides the state; one missed probe
    flips an agent Offline (no flap dampening). Offline keeps the last
    reported machine name and label for display.

Synchronization:
    - `_lock` guards the record map. Records are values: updates swap in a
      new copy, readers get copies, so nobody sees a half-updated record.
    - `_cycle_lock` is taken non-blocking, so an overlapping cycle is
      skipped instead of racing the running one.
    - Within a cycle each agent's result is applied as soon as its probe
      finishes, without waiting for the slowest agent.
"""

import logging
import math
import threading
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from shepherd.client import AgentClient, AgentError
from shepherd.labels import LABEL_PREFIX, find_duplicates, label_for, parse_label_number
from shepherd.types import AgentRecord, AgentState, FleetStatus, IdentitySnapshot, StatusSnapshot

logger = logging.getLogger("shepherd.registry")

DEFAULT_AGENT_PORT = 3001
CYCLE_TICK_S = 0.05   # How often a cycle checks running probes against their deadline


# =============================================================================
# EXCEPTIONS
# =============================================================================

class RegistrationError(Exception):
    """Manual add rejected: the agent did not answer its status probe."""

    def __init__(self, address: str, reason: Optional[str] = None):
        self.address = address
        self.reason = reason
        message = f"Cannot register agent at {address}"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class UnknownAgent(KeyError):
    """No record matches the given id, address, or label."""

    def __init__(self, ref: str):
        self.ref = ref
        super().__init__(ref)

    def __str__(self) -> str:
        return f"Unknown agent: {self.ref}"


# =============================================================================
# PROBE RESULTS
# =============================================================================

@dataclass
class ProbeResult:
    """Outcome of probing one agent."""
    address: str
    online: bool
    status: Optional[StatusSnapshot] = None
    identity: Optional[IdentitySnapshot] = None
    error: Optional[str] = None


@dataclass
class CycleReport:
    """What one reconciliation cycle saw and changed."""
    started_at: str
    finished_at: Optional[str] = None
    states: Dict[str, AgentState] = field(default_factory=dict)
    transitions: List[Tuple[str, str, str]] = field(default_factory=list)  # (address, old, new)

    @property
    def online(self) -> int:
        return sum(1 for s in self.states.values() if s == AgentState.ONLINE)

    @property
    def offline(self) -> int:
        return sum(1 for s in self.states.values() if s == AgentState.OFFLINE)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
            "online": self.online,
            "offline": self.offline,
            "states": {a: s.value for a, s in self.states.items()},
            "transitions": [
                {"address": a, "from": old, "to": new} for a, old, new in self.transitions
            ],
        }


def normalize_address(address: str, default_port: int = DEFAULT_AGENT_PORT) -> str:
    """'http://10.0.0.5/' -> '10.0.0.5:3001'."""
    address = address.strip()
    for scheme in ("http://", "https://"):
        if address.lower().startswith(scheme):
            address = address[len(scheme):]
    address = address.rstrip("/")
    if not address:
        raise ValueError("Agent address is empty")
    if ":" not in address:
        address = f"{address}:{default_port}"
    return address


ClientFactory = Callable[[str], AgentClient]


# =============================================================================
# REGISTRY
# =============================================================================

class FleetRegistry:
    """
    Owns the fleet's agent records.

    Args:
        client_factory: Builds an AgentClient for an address
        status_timeout: Seconds for each status probe
        identity_timeout: Seconds for each identity probe
        add_timeout: Seconds for the manual-add status probe
        poll_workers: Max concurrent probes per cycle
        label_prefix: Fleet label prefix ("Shepherd-")
        default_port: Port assumed when an address has none
        cycle_grace_s: Slack on top of the probe timeouts before a cycle
            gives up on a hung probe and marks it Offline
    """

    def __init__(
        self,
        client_factory: Optional[ClientFactory] = None,
        status_timeout: float = 5,
        identity_timeout: float = 3,
        add_timeout: float = 10,
        poll_workers: int = 16,
        label_prefix: str = LABEL_PREFIX,
        default_port: int = DEFAULT_AGENT_PORT,
        cycle_grace_s: float = 2.0,
    ):
        self._client_factory = client_factory or AgentClient
        self.status_timeout = status_timeout
        self.identity_timeout = identity_timeout
        self.add_timeout = add_timeout
        self.poll_workers = poll_workers
        self.label_prefix = label_prefix
        self.default_port = default_port
        self.cycle_grace_s = cycle_grace_s

        self._records: Dict[str, AgentRecord] = {}
        self._lock = threading.RLock()
        self._cycle_lock = threading.Lock()
        self._next_id = 1
        self._label_high_water = 0
        self.last_cycle: Optional[CycleReport] = None

        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # =========================================================================
    # READERS
    # =========================================================================

    def snapshot(self) -> List[AgentRecord]:
        """Copies of every record, in admission order."""
        with self._lock:
            return [r.copy() for r in self._records.values()]

    def addresses(self) -> Set[str]:
        with self._lock:
            return set(self._records)

    def _find(self, ref: str) -> Optional[AgentRecord]:
        ref = str(ref).strip()
        for record in self._records.values():
            if record.id == ref:
                return record
        try:
            record = self._records.get(normalize_address(ref, self.default_port))
        except ValueError:
            record = None
        if record:
            return record
        labeled = [r for r in self._records.values() if r.fleet_label == ref]
        if len(labeled) == 1:
            return labeled[0]
        return None

    def get(self, ref: str) -> AgentRecord:
        """Look up a record by id, address, or (unique) fleet label."""
        with self._lock:
            record = self._find(ref)
            if record is None:
                raise UnknownAgent(ref)
            return record.copy()

    def fleet_status(self) -> FleetStatus:
        records = self.snapshot()
        return FleetStatus(
            timestamp=datetime.now().isoformat(),
            agents=records,
            duplicates=find_duplicates(records),
        )

    # =========================================================================
    # PROBING
    # =========================================================================

    def probe(self, address: str, status_timeout: Optional[float] = None) -> ProbeResult:
        """Status probe, then identity probe. Only the status probe decides liveness."""
        client = self._client_factory(address)
        try:
            try:
                status = client.get_status(timeout=status_timeout or self.status_timeout)
            except AgentError as e:
                return ProbeResult(address, online=False, error=str(e))

            identity = None
            try:
                identity = client.get_identity(timeout=self.identity_timeout)
            except AgentError as e:
                logger.debug(f"Identity probe failed for {address}: {e}")
            return ProbeResult(address, online=True, status=status, identity=identity)
        finally:
            client.close()

    # =========================================================================
    # MUTATION (all under _lock)
    # =========================================================================

    def _assign_label(self, record: AgentRecord, machine_name: str) -> Optional[str]:
        if record.fleet_label:
            return record.fleet_label
        others = [r for r in self._records.values() if r.address != record.address]
        label = label_for(others, machine_name, self.label_prefix, self._label_high_water)
        number = parse_label_number(label, self.label_prefix)
        if number is not None:
            self._label_high_water = max(self._label_high_water, number)
        holders = [r.address for r in others if r.fleet_label == label]
        if holders:
            logger.warning(
                f"{record.address} reports machine name '{machine_name}' already labeled "
                f"{label} by {', '.join(holders)}"
            )
        else:
            logger.info(f"Assigned {label} to {record.address} ({machine_name})")
        return label

    def _apply(self, result: ProbeResult) -> Optional[Tuple[AgentState, AgentState]]:
        """Swap in the updated record. Returns (old, new) state, or None if removed."""
        with self._lock:
            current = self._records.get(result.address)
            if current is None:
                return None

            if result.online:
                changes: Dict[str, Any] = {
                    "state": AgentState.ONLINE,
                    "last_seen_at": datetime.now().isoformat(),
                }
                if result.identity and result.identity.pc_name:
                    changes["reported_machine_name"] = result.identity.pc_name
                    changes["reported_agent_id"] = result.identity.agent_id or None
                    changes["display_name"] = result.identity.pc_name
                    changes["fleet_label"] = self._assign_label(current, result.identity.pc_name)
                updated = current.copy(**changes)
            else:
                updated = current.copy(state=AgentState.OFFLINE)

            self._records[result.address] = updated

        if current.state != updated.state:
            if updated.state == AgentState.OFFLINE:
                logger.warning(f"{result.address} went offline: {result.error}")
            else:
                logger.info(f"{result.address} is {updated.state.value}")
        return current.state, updated.state

    def _admit(self, result: ProbeResult, added_via: str) -> Tuple[AgentRecord, bool]:
        """Create a record for a reachable address. Returns (record, created)."""
        with self._lock:
            existing = self._records.get(result.address)
            if existing is not None:
                return existing.copy(), False
            record = AgentRecord(
                id=str(self._next_id),
                display_name=result.address,
                address=result.address,
                added_via=added_via,
            )
            self._next_id += 1
            self._records[result.address] = record
            self._apply(result)
            logger.info(f"Admitted agent {record.id} at {result.address} via {added_via}")
            return self._records[result.address].copy(), True

    def add_agent(self, address: str) -> AgentRecord:
        """
        Manually register an agent after one bounded status probe.

        Adding an address that is already registered returns the existing
        record instead of creating a second one.

        Raises:
            RegistrationError: The agent did not answer
        """
        address = normalize_address(address, self.default_port)
        with self._lock:
            existing = self._records.get(address)
            if existing is not None:
                logger.info(f"Agent at {address} already registered as {existing.id}")
                return existing.copy()

        # Probe without holding the lock; _admit re-checks for a racing add
        result = self.probe(address, status_timeout=self.add_timeout)
        if not result.online:
            raise RegistrationError(address, result.error)
        record, _ = self._admit(result, added_via="manual")
        return record

    def track(self, address: str) -> AgentRecord:
        """Register a configured address without probing; the next cycle decides its state."""
        address = normalize_address(address, self.default_port)
        with self._lock:
            existing = self._records.get(address)
            if existing is not None:
                return existing.copy()
            record = AgentRecord(id=str(self._next_id), display_name=address, address=address, added_via="config")
            self._next_id += 1
            self._records[address] = record
        logger.info(f"Tracking configured agent {record.id} at {address}")
        return record.copy()

    def admit_discovered(self, result: ProbeResult) -> Optional[AgentRecord]:
        """Admit a discovery hit. None if the address is already a member."""
        record, created = self._admit(result, added_via="discovery")
        return record if created else None

    def remove_agent(self, ref: str) -> AgentRecord:
        with self._lock:
            record = self._find(ref)
            if record is None:
                raise UnknownAgent(ref)
            del self._records[record.address]
        logger.info(f"Removed agent {record.id} at {record.address}")
        return record.copy()

    # =========================================================================
    # RECONCILIATION
    # =========================================================================

    def run_cycle(self) -> Optional[CycleReport]:
        """
        Probe every agent once, concurrently.

        Returns None without probing if another cycle is still running.
        """
        if not self._cycle_lock.acquire(blocking=False):
            logger.warning("Previous reconciliation cycle still running, skipping")
            return None
        try:
            report = self._run_cycle()
            self.last_cycle = report
            return report
        finally:
            self._cycle_lock.release()

    def _record(self, report: CycleReport, address: str, change: Optional[Tuple[AgentState, AgentState]]):
        if change is None:
            return
        old, new = change
        report.states[address] = new
        if old != new:
            report.transitions.append((address, old.value, new.value))

    def _timed_probe(self, address: str, started: Dict[str, float]) -> ProbeResult:
        started[address] = time.monotonic()
        return self.probe(address)

    def _run_cycle(self) -> CycleReport:
        report = CycleReport(started_at=datetime.now().isoformat())
        addresses = sorted(self.addresses())
        if not addresses:
            report.finished_at = datetime.now().isoformat()
            return report

        # Deadlines run from when a worker picks each probe up
        deadline = self.status_timeout + self.identity_timeout + self.cycle_grace_s
        workers = max(1, min(self.poll_workers, len(addresses)))
        cycle_budget = deadline * math.ceil(len(addresses) / workers)
        cycle_started = time.monotonic()

        pool = ThreadPoolExecutor(max_workers=workers)
        started: Dict[str, float] = {}
        futures = {pool.submit(self._timed_probe, address, started): address for address in addresses}
        pending = set(futures)
        try:
            while pending:
                done, pending = wait(pending, timeout=CYCLE_TICK_S, return_when=FIRST_COMPLETED)
                for future in done:
                    address = futures[future]
                    try:
                        result = future.result()
                    except Exception as e:
                        logger.error(f"Error probing {address}: {e}")
                        result = ProbeResult(address, online=False, error=str(e))
                    self._record(report, address, self._apply(result))

                now = time.monotonic()
                over_budget = now - cycle_started > cycle_budget
                expired = [
                    f for f in pending
                    if over_budget or now - started.get(futures[f], now) > deadline
                ]
                for future in expired:
                    pending.discard(future)
                    address = futures[future]
                    result = ProbeResult(address, online=False, error=f"probe exceeded {deadline:.1f}s")
                    self._record(report, address, self._apply(result))
        finally:
            # Expired probes finish in the background; their results are discarded
            pool.shutdown(wait=False, cancel_futures=True)

        report.finished_at = datetime.now().isoformat()
        logger.debug(f"Cycle done: {report.online} online, {report.offline} offline")
        return report

    def _loop(self, interval: float):
        while not self._stop.is_set():
            try:
                self.run_cycle()
            except Exception as e:
                logger.error(f"Error in reconciliation loop: {e}", exc_info=True)
            self._stop.wait(interval)

    def start(self, interval: float = 10) -> threading.Thread:
        """Run reconciliation cycles on a background thread every `interval` seconds."""
        if self._thread and self._thread.is_alive():
            return self._thread
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop, args=(interval,), name="shepherd-reconcile", daemon=True
        )
        self._thread.start()
        logger.info(f"Reconciliation started (interval={interval}s)")
        return self._thread

    def stop(self, timeout: Optional[float] = None):
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None
