"""
Shepherd - Remote management for a fleet of PCs.

Shepherd manages machines on a local network:
- Agents run on each PC, reporting status and executing commands
- The Controller tracks agents, polls their liveness, and relays commands

Components:
    - agent.py: Agent HTTP endpoint (runs on each PC)
    - executor.py: OS command execution behind the agent
    - controller.py: Fleet controller (runs on the operator's machine)
    - registry.py: Agent records, reconciliation, fleet labels
    - api.py: Flask API over the controller
    - types.py: Shared data types

Usage:
    # Start agent on a PC
    python3 -m shepherd.agent --port 3001

    # Query fleet status from the controller
    from shepherd.controller import get_controller
    status = get_controller().fleet_status()
"""

from shepherd.types import AgentRecord, AgentState, CommandOutcome, ErrorKind, FleetStatus

__version__ = "0.1.0"

__all__ = ["AgentRecord", "AgentState", "CommandOutcome", "ErrorKind", "FleetStatus"]
