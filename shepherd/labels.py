"""
Identity Assigner - Stable "Shepherd-NN" fleet labels per machine name.

Policy:
    - A machine name already labeled by any record in the snapshot gets that
      same label back (a reimaged PC keeps its label).
    - Otherwise the next number is max(existing suffixes, high-water mark) + 1,
      so numbers are never reused within a registry's lifetime.
    - Labels are zero-padded to two digits ("Shepherd-04", "Shepherd-123").

Everything here is a pure function of its arguments. The registry owns the
high-water mark and applies the returned label under its own lock.
"""

import re
from collections import defaultdict
from typing import Dict, Iterable, List, Optional

from shepherd.types import AgentRecord

LABEL_PREFIX = "Shepherd-"


def format_label(number: int, prefix: str = LABEL_PREFIX) -> str:
    return f"{prefix}{number:02d}"


def parse_label_number(label: Optional[str], prefix: str = LABEL_PREFIX) -> Optional[int]:
    """Numeric suffix of a label, or None if it is not one of ours."""
    if not label or not label.startswith(prefix):
        return None
    match = re.fullmatch(r"\d+", label[len(prefix):])
    return int(match.group(0)) if match else None


def highest_label_number(records: Iterable[AgentRecord], prefix: str = LABEL_PREFIX) -> int:
    numbers = [parse_label_number(r.fleet_label, prefix) for r in records]
    return max((n for n in numbers if n is not None), default=0)


def existing_label(records: Iterable[AgentRecord], machine_name: str) -> Optional[str]:
    """Label already held by a record reporting this exact machine name."""
    for record in records:
        if record.fleet_label and record.reported_machine_name == machine_name:
            return record.fleet_label
    return None


def label_for(
    records: List[AgentRecord],
    machine_name: str,
    prefix: str = LABEL_PREFIX,
    high_water: int = 0,
) -> str:
    """
    Label for `machine_name` given a registry snapshot.

    Args:
        records: Snapshot of the registry (not mutated)
        machine_name: Name reported by the agent's /pc-info
        prefix: Label prefix
        high_water: Highest number ever issued by the caller

    Returns:
        The reused label, or a freshly numbered one
    """
    reused = existing_label(records, machine_name)
    if reused:
        return reused
    return format_label(max(highest_label_number(records, prefix), high_water) + 1, prefix)


def find_duplicates(records: Iterable[AgentRecord]) -> Dict[str, List[str]]:
    """Labels shared by more than one address: label -> sorted addresses."""
    by_label: Dict[str, List[str]] = defaultdict(list)
    for record in records:
        if record.fleet_label:
            by_label[record.fleet_label].append(record.address)
    return {label: sorted(addrs) for label, addrs in sorted(by_label.items()) if len(addrs) > 1}
