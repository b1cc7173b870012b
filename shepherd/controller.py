#!/usr/bin/env python3
"""
Shepherd Controller - Central management for a fleet of Shepherd agents.

The controller runs on the operator's machine and:
1. Tracks agents (configured, manually added, or discovered by subnet scan)
2. Polls every agent for liveness and identity on a fixed interval
3. Dispatches commands (start/stop programs, restart, network toggle)

Usage:
    # As a library (integrated into the API server)
    from shepherd.controller import FleetController
    controller = FleetController()
    status = controller.fleet_status()

    # Standalone daemon
    python3 -m shepherd.controller --daemon

    # One-shot status check (probes every configured agent once)
    python3 -m shepherd.controller --status

    # Commands
    python3 -m shepherd.controller --add 192.168.1.20
    python3 -m shepherd.controller --command start --agent 192.168.1.20 --target winword
    python3 -m shepherd.controller --watch 192.168.1.20
"""

import json
import logging
import threading
from typing import Any, Callable, Dict, Iterator, List, Optional

from shepherd.client import AgentClient, AgentUnavailable
from shepherd.config import ControllerConfig, load_controller_config
from shepherd.discovery import SubnetScanner, discover
from shepherd.registry import CycleReport, FleetRegistry, RegistrationError, UnknownAgent
from shepherd.types import AgentRecord, FleetStatus

logger = logging.getLogger("shepherd.controller")

# command -> (agent path, required body field)
AGENT_COMMANDS: Dict[str, tuple] = {
    "start": ("/start", "path"),
    "stop": ("/stop", "name"),
    "restart": ("/restart", None),
    "disconnect": ("/disconnect", None),
    "reconnect": ("/reconnect", None),
    "find-program": ("/find-program", "programName"),
}


class InvalidCommand(ValueError):
    """Unknown command or missing required field. Raised before any network call."""
    pass


class FleetController:
    """
    Facade over the registry, discovery, and command dispatch.

    Args:
        config: Controller config (default: loaded from controller.yaml)
        registry: Fleet registry (default: built from config)
        scanner: Subnet scanner (default: built from config)
        client_factory: Builds an AgentClient for an address
    """

    def __init__(
        self,
        config: Optional[ControllerConfig] = None,
        registry: Optional[FleetRegistry] = None,
        scanner: Optional[SubnetScanner] = None,
        client_factory: Optional[Callable[[str], AgentClient]] = None,
    ):
        self.config = config or load_controller_config()
        self._client_factory = client_factory or (
            lambda address: AgentClient(address, timeout=self.config.command_timeout_s)
        )
        self.registry = registry or FleetRegistry(
            client_factory=self._client_factory,
            status_timeout=self.config.status_timeout_s,
            identity_timeout=self.config.identity_timeout_s,
            add_timeout=self.config.add_timeout_s,
            poll_workers=self.config.poll_workers,
            label_prefix=self.config.label_prefix,
            default_port=self.config.agent_port,
        )
        self.scanner = scanner or SubnetScanner(
            client_factory=self._client_factory,
            prefixes=self.config.scan_prefixes,
            port=self.config.agent_port,
            timeout=self.config.scan_timeout_s,
            workers=self.config.scan_workers,
        )
        self._scan_lock = threading.Lock()

        for address in self.config.agents:
            try:
                self.registry.track(address)
            except ValueError as e:
                logger.warning(f"Ignoring configured agent {address!r}: {e}")

    # =========================================================================
    # FLEET
    # =========================================================================

    def fleet_status(self) -> FleetStatus:
        return self.registry.fleet_status()

    def refresh(self) -> Optional[CycleReport]:
        """Run one reconciliation cycle now (None if one is already running)."""
        return self.registry.run_cycle()

    def add_agent(self, address: str) -> AgentRecord:
        return self.registry.add_agent(address)

    def remove_agent(self, ref: str) -> AgentRecord:
        return self.registry.remove_agent(ref)

    def scan(self) -> List[AgentRecord]:
        """Discover agents on the configured subnets. Concurrent scans are serialized."""
        with self._scan_lock:
            return discover(self.registry, self.scanner)

    def agent_status(self, ref: str) -> Dict[str, Any]:
        """Live status of one agent, straight from the agent."""
        record = self.registry.get(ref)
        client = self._client_factory(record.address)
        try:
            status = client.get_status(timeout=self.config.status_timeout_s)
        finally:
            client.close()
        return {"agent": record.to_dict(), "status": status.to_dict()}

    # =========================================================================
    # COMMANDS
    # =========================================================================

    @staticmethod
    def build_command(command: str, params: Optional[Dict[str, Any]] = None) -> tuple:
        """Validate a command and return (agent path, body)."""
        if command not in AGENT_COMMANDS:
            raise InvalidCommand(f"Unknown command: {command}")
        path, required = AGENT_COMMANDS[command]
        body: Dict[str, Any] = {}
        if required:
            value = (params or {}).get(required)
            if not isinstance(value, str) or not value.strip():
                raise InvalidCommand(f"{required} is required for {command}")
            body[required] = value.strip()
        return path, body

    def dispatch(self, ref: str, command: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Send one command to one agent and return the agent's response body.

        Restart counts as done once submitted: an agent that goes quiet after
        receiving the request is rebooting, not failing.

        Raises:
            InvalidCommand: Unknown command or missing field
            UnknownAgent: No such agent
            AgentError: Agent unreachable or reported a failure
        """
        path, body = self.build_command(command, params)
        record = self.registry.get(ref)

        logger.info(f"Dispatching {command} to {record.address} {body or ''}".rstrip())
        client = self._client_factory(record.address)
        try:
            if command == "restart":
                return self._submit_restart(client, path, record)
            return client.request("POST", path, json_body=body)
        finally:
            client.close()

    def _submit_restart(self, client: AgentClient, path: str, record: AgentRecord) -> Dict[str, Any]:
        try:
            return client.request("POST", path, json_body={}, timeout=self.config.status_timeout_s)
        except AgentUnavailable as e:
            if not e.sent:
                raise
            logger.info(f"{record.address} went quiet after restart was submitted")
            return {"success": True, "message": "Restart submitted"}

    def watch(self, ref: str) -> Iterator[Dict[str, Any]]:
        """Yield events from one agent's push channel."""
        record = self.registry.get(ref)
        client = self._client_factory(record.address)
        try:
            yield from client.stream_events(connect_timeout=self.config.status_timeout_s)
        finally:
            client.close()

    # =========================================================================
    # DAEMON
    # =========================================================================

    def start(self):
        self.registry.start(interval=self.config.poll_interval_s)

    def stop(self):
        self.registry.stop(timeout=self.config.status_timeout_s + self.config.identity_timeout_s)

    def run_daemon(self):
        """Poll forever, logging a fleet summary after every cycle."""
        logger.info(f"Starting Shepherd controller daemon (interval={self.config.poll_interval_s}s)")
        stop = threading.Event()
        try:
            while not stop.is_set():
                try:
                    report = self.refresh()
                    if report is not None:
                        status = self.fleet_status()
                        logger.info(
                            f"Fleet: {status.total} agents, {status.online} online, {status.offline} offline"
                        )
                        for label, addresses in status.duplicates.items():
                            logger.warning(f"Duplicate machine name: {label} used by {', '.join(addresses)}")
                except Exception as e:
                    logger.error(f"Error in daemon loop: {e}")
                stop.wait(self.config.poll_interval_s)
        except KeyboardInterrupt:
            logger.info("Shutting down controller")


# Singleton instance
_controller: Optional[FleetController] = None
_controller_lock = threading.Lock()


def get_controller() -> FleetController:
    """Get or create the fleet controller singleton."""
    global _controller
    if _controller is None:
        with _controller_lock:
            if _controller is None:
                _controller = FleetController()
    return _controller


def _print_status(status: FleetStatus):
    print(f"\nFleet Status ({status.timestamp})")
    print("=" * 60)
    print(f"Agents: {status.total} total, {status.online} online, {status.offline} offline")
    for agent in status.agents:
        label = agent.fleet_label or "-"
        name = agent.reported_machine_name or "?"
        print(f"  [{agent.id}] {label:<13} {agent.address:<22} {agent.state.value:<8} {name}")
    for label, addresses in status.duplicates.items():
        print(f"  ! {label} shared by {', '.join(addresses)}")


if __name__ == "__main__":
    import argparse

    from shepherd.client import AgentError

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    parser = argparse.ArgumentParser(description="Shepherd Controller")
    parser.add_argument("--config", type=str, help="Path to controller config file")
    parser.add_argument("--status", action="store_true", help="Probe all agents and show fleet status")
    parser.add_argument("--daemon", action="store_true", help="Run as daemon")
    parser.add_argument("--interval", type=float, help="Daemon poll interval (seconds)")
    parser.add_argument("--add", type=str, metavar="ADDRESS", help="Register an agent")
    parser.add_argument("--remove", type=str, metavar="REF", help="Remove an agent")
    parser.add_argument("--scan", action="store_true", help="Scan subnets for agents")
    parser.add_argument("--command", type=str, choices=sorted(AGENT_COMMANDS), help="Command to send")
    parser.add_argument("--agent", type=str, help="Agent id, address, or label for --command")
    parser.add_argument("--target", type=str, help="Program path/name for start, stop, find-program")
    parser.add_argument("--watch", type=str, metavar="REF", help="Stream an agent's events")

    args = parser.parse_args()

    config = load_controller_config(args.config)
    if args.interval:
        config.poll_interval_s = args.interval

    controller = FleetController(config=config)

    try:
        if args.add:
            record = controller.add_agent(args.add)
            print(json.dumps(record.to_dict(), indent=2))

        elif args.remove:
            record = controller.remove_agent(args.remove)
            print(f"Removed {record.address}")

        elif args.scan:
            found = controller.scan()
            print(f"Found {len(found)} new agent(s)")
            for record in found:
                print(f"  {record.address}")

        elif args.command:
            if not args.agent:
                parser.error("--command requires --agent")
            # Commands address agents directly; no need for a registry entry first
            try:
                controller.registry.get(args.agent)
            except UnknownAgent:
                controller.add_agent(args.agent)
            field_name = AGENT_COMMANDS[args.command][1]
            params = {field_name: args.target} if field_name else {}
            result = controller.dispatch(args.agent, args.command, params)
            print(json.dumps(result, indent=2))

        elif args.watch:
            try:
                controller.registry.get(args.watch)
            except UnknownAgent:
                controller.registry.track(args.watch)
            for event in controller.watch(args.watch):
                print(json.dumps(event))

        elif args.daemon:
            controller.run_daemon()

        else:
            # Default: show status
            controller.refresh()
            status = controller.fleet_status()
            if args.status:
                print(json.dumps(status.to_dict(), indent=2))
            else:
                _print_status(status)

    except (InvalidCommand, RegistrationError, UnknownAgent, AgentError) as e:
        logger.error(str(e))
        raise SystemExit(1)
    except KeyboardInterrupt:
        pass
