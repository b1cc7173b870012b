"""
Command Executor - Turns abstract intents into OS-level actions.

Every public operation returns a CommandOutcome and never raises past this
module. Failures are classified into ErrorKind so callers can give the
operator the right advice (elevate vs. check the program name vs. retry).

Operations:
    start_program(descriptor)         - launch by path, else by bare name
    stop_program(name)                - forced kill by image name (idempotent)
    restart_host()                    - immediate reboot request
    set_network_connectivity(bool)    - disable default-route adapter / enable disabled ones
    query_status()                    - best-effort system snapshot (pure read)

Concurrency:
    Operations are not serialized against each other. Two concurrent calls
    for the same program name are ordered by the OS, nothing else.

Both Windows (taskkill, shutdown /r, NetAdapter cmdlets) and POSIX (pkill,
shutdown -r, ip link) hosts are supported. The subprocess seams (runner,
launcher) are injectable for testing.
"""

import json
import logging
import os
import platform
import re
import shutil
import socket
import subprocess
import sys
import tempfile
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import psutil

from shepherd.types import (
    CommandOutcome,
    ErrorKind,
    NetworkAdapter,
    ProgramDescriptor,
    StatusSnapshot,
    normalize_image_name,
)

logger = logging.getLogger("shepherd.executor")

DEFAULT_TIMEOUT = 30            # Seconds for any single OS command
LAUNCH_GRACE_SECONDS = 1.0      # How long to watch a launched program for an early exit
QUERY_TIMEOUT = 10              # Adapter/route queries
COMM_NAME_MAX = 15              # Linux truncates the kernel process name (comm) to 15 chars

PERMISSION_RE = re.compile(
    r"access (is )?denied|permission ?denied|operation not permitted|"
    r"requires elevation|run as administrator|not have (the )?(required )?privilege",
    re.IGNORECASE,
)
NOT_FOUND_RE = re.compile(
    r"not found|cannot find|could not find|no such|does not exist|"
    r"objectnotfound|is not recognized|no process",
    re.IGNORECASE,
)

VIRTUAL_ADAPTER_RE = re.compile(
    r"^(lo\d*$|docker|veth|br-|virbr|vmnet|vboxnet|tun\d|tap\d|wg\d|zt|tailscale|utun|awdl|llw)|"
    r"loopback|vethernet|virtual|hyper-v|vmware|virtualbox|pseudo|wan miniport|tap-windows",
    re.IGNORECASE,
)


def classify_error(text: str) -> ErrorKind:
    """Map OS error text to an ErrorKind. Permission wins over not-found."""
    if not text:
        return ErrorKind.UNKNOWN
    if PERMISSION_RE.search(text):
        return ErrorKind.PERMISSION_DENIED
    if NOT_FOUND_RE.search(text):
        return ErrorKind.NOT_FOUND
    return ErrorKind.UNKNOWN


def looks_virtual(name: str, description: str = "") -> bool:
    return bool(VIRTUAL_ADAPTER_RE.search(name) or VIRTUAL_ADAPTER_RE.search(description))


# =============================================================================
# SUBPROCESS SEAMS
# =============================================================================

@dataclass
class CommandResult:
    """Output of one finished OS command."""
    returncode: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    spawn_failed: bool = False   # The tool itself could not be started

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    @property
    def error_text(self) -> str:
        return (self.stderr or self.stdout).strip() or f"exit code {self.returncode}"


@dataclass
class LaunchResult:
    """What we know about a program shortly after launching it."""
    pid: Optional[int]
    returncode: Optional[int]   # None while still running
    stderr: str = ""

    @property
    def created(self) -> bool:
        """The process exists (still running) or ran to a clean exit."""
        return self.returncode is None or self.returncode == 0


def run_command(args: Sequence[str], timeout: float) -> CommandResult:
    """Run a command to completion and capture its output."""
    proc = subprocess.run(
        list(args), capture_output=True, text=True, errors="replace", timeout=timeout,
    )
    return CommandResult(proc.returncode, proc.stdout or "", proc.stderr or "")


def launch_process(args: Sequence[str], grace_seconds: float) -> LaunchResult:
    """
    Start a detached program and watch it briefly for an early failure.

    Raises FileNotFoundError / PermissionError from Popen unchanged.
    """
    kwargs: Dict[str, Any] = {}
    if sys.platform == "win32":
        kwargs["creationflags"] = subprocess.DETACHED_PROCESS | subprocess.CREATE_NEW_PROCESS_GROUP
    else:
        kwargs["start_new_session"] = True

    # stderr goes to a file, not a pipe: a long-lived program must never block on it
    with tempfile.TemporaryFile() as err:
        proc = subprocess.Popen(
            list(args), stdin=subprocess.DEVNULL, stdout=subprocess.DEVNULL, stderr=err, **kwargs,
        )
        try:
            returncode = proc.wait(timeout=grace_seconds)
        except subprocess.TimeoutExpired:
            returncode = None
        err.seek(0)
        stderr = err.read().decode(errors="replace").strip()

    return LaunchResult(pid=proc.pid, returncode=returncode, stderr=stderr)


Runner = Callable[[Sequence[str], float], CommandResult]
Launcher = Callable[[Sequence[str], float], LaunchResult]


def _safe(fn: Callable[[], Any], label: str) -> Any:
    """Best-effort read: any failure becomes None."""
    try:
        return fn()
    except Exception as e:
        logger.debug(f"Status field '{label}' unavailable: {e}")
        return None


# =============================================================================
# EXECUTOR
# =============================================================================

class CommandExecutor:
    """
    Executes one administrative action at a time and normalizes the result.

    Args:
        is_windows: Target command family (defaults to the running platform)
        runner: Runs a command to completion (default: subprocess.run)
        launcher: Starts a detached program (default: subprocess.Popen)
        timeout: Per-command timeout in seconds
        launch_grace_seconds: Early-exit watch window for start_program
    """

    def __init__(
        self,
        is_windows: Optional[bool] = None,
        runner: Optional[Runner] = None,
        launcher: Optional[Launcher] = None,
        timeout: float = DEFAULT_TIMEOUT,
        launch_grace_seconds: float = LAUNCH_GRACE_SECONDS,
    ):
        self.is_windows = sys.platform == "win32" if is_windows is None else is_windows
        self.suffix = ".exe" if self.is_windows else ""
        self.timeout = timeout
        self.launch_grace_seconds = launch_grace_seconds
        self._runner = runner or run_command
        self._launcher = launcher or launch_process

        self.adapter_strategies: List[Callable[[], Optional[List[NetworkAdapter]]]] = [
            self._adapters_from_os,
            self._adapters_from_psutil,
        ]

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _call(self, args: Sequence[str], timeout: Optional[float] = None) -> CommandResult:
        """Run a command; spawn errors and timeouts come back as a failed result."""
        timeout = timeout or self.timeout
        try:
            return self._runner(args, timeout)
        except subprocess.TimeoutExpired:
            return CommandResult(-1, stderr=f"{args[0]} timed out after {timeout}s", timed_out=True)
        except FileNotFoundError:
            return CommandResult(127, stderr=f"{args[0]} is not available on this host", spawn_failed=True)
        except PermissionError as e:
            return CommandResult(126, stderr=f"Permission denied running {args[0]}: {e}", spawn_failed=True)
        except OSError as e:
            return CommandResult(-1, stderr=str(e), spawn_failed=True)

    @staticmethod
    def _kind_of(result: CommandResult) -> ErrorKind:
        if result.timed_out:
            return ErrorKind.TIMEOUT
        return classify_error(result.error_text)

    def _failure(self, result: CommandResult, prefix: str) -> CommandOutcome:
        return CommandOutcome.failed(self._kind_of(result), f"{prefix}: {result.error_text}")

    def _powershell(self, script: str) -> List[str]:
        return ["powershell.exe", "-NoProfile", "-NonInteractive", "-Command", script]

    # -------------------------------------------------------------------------
    # Programs
    # -------------------------------------------------------------------------

    def _launch_args(self, descriptor: ProgramDescriptor) -> List[str]:
        target = descriptor.launch_target
        if descriptor.resolved_path:
            return [target]
        if self.is_windows:
            # `start` resolves App Paths, PATH and protocol handlers (ms-settings:)
            return ["cmd", "/c", "start", "", target]
        if shutil.which(target):
            return [target]
        return ["xdg-open", target]

    def start_program(self, descriptor: ProgramDescriptor) -> CommandOutcome:
        """Launch a program by resolved path if known, else by bare name."""
        target = descriptor.launch_target
        if not target:
            return CommandOutcome.failed(ErrorKind.NOT_FOUND, "No program given")

        args = self._launch_args(descriptor)
        logger.info(f"Starting program: {args}")
        try:
            launch = self._launcher(args, self.launch_grace_seconds)
        except FileNotFoundError:
            return CommandOutcome.failed(ErrorKind.NOT_FOUND, f"Program not found: {target}")
        except PermissionError as e:
            return CommandOutcome.failed(ErrorKind.PERMISSION_DENIED, f"Permission denied starting {target}: {e}")
        except OSError as e:
            return CommandOutcome.failed(classify_error(str(e)), f"Failed to start program {target}: {e}")

        if launch.created:
            # "file not found" noise from a process that did start is not fatal
            if launch.stderr:
                logger.warning(f"{target} wrote to stderr while starting: {launch.stderr}")
            return CommandOutcome.ok(f"Program started successfully: {target}")

        detail = launch.stderr or f"exited with code {launch.returncode}"
        kind = classify_error(launch.stderr)
        return CommandOutcome.failed(kind, f"Failed to start program {target}: {detail}")

    def _no_such_process(self, result: CommandResult) -> bool:
        if result.spawn_failed or result.timed_out:
            return False
        if self.is_windows:
            # taskkill: 'ERROR: The process "x.exe" not found.' (exit 128)
            return result.returncode == 128 or (
                classify_error(result.error_text) == ErrorKind.NOT_FOUND
            )
        # pkill: exit 1 means nothing matched
        return result.returncode == 1 and not PERMISSION_RE.search(result.error_text)

    def stop_program(self, name: str) -> CommandOutcome:
        """
        Force-terminate every process with this image name.

        Nothing running is success: the desired end state already holds.
        """
        image = normalize_image_name(name or "", self.suffix)
        if not image:
            return CommandOutcome.failed(ErrorKind.NOT_FOUND, "No program name given")

        if self.is_windows:
            args = ["taskkill", "/IM", image, "/F"]
        elif len(image) > COMM_NAME_MAX:
            # pkill -x never matches a truncated comm name
            return self._kill_by_executable(image)
        else:
            args = ["pkill", "-KILL", "-x", image]

        result = self._call(args)
        if result.ok:
            return CommandOutcome.ok(f"Program stopped successfully: {image}")
        if self._no_such_process(result):
            return CommandOutcome.ok(f"{image} already stopped")
        return self._failure(result, f"Failed to stop program {image}")

    @staticmethod
    def _matches_image(info: Dict[str, Any], image: str) -> bool:
        if info.get("name") == image:
            return True
        if info.get("exe") and os.path.basename(info["exe"]) == image:
            return True
        cmdline = info.get("cmdline") or []
        return bool(cmdline) and os.path.basename(cmdline[0]) == image

    def _kill_by_executable(self, image: str) -> CommandOutcome:
        """SIGKILL every process whose executable is `image`, matched through psutil."""
        killed = 0
        denied: List[str] = []
        try:
            for proc in psutil.process_iter(["name", "exe", "cmdline"]):
                if not self._matches_image(proc.info, image):
                    continue
                try:
                    proc.kill()
                    killed += 1
                except psutil.NoSuchProcess:
                    continue
                except psutil.AccessDenied:
                    denied.append(str(proc.pid))
        except psutil.Error as e:
            return CommandOutcome.failed(classify_error(str(e)), f"Failed to stop program {image}: {e}")

        if denied:
            return CommandOutcome.failed(
                ErrorKind.PERMISSION_DENIED,
                f"Failed to stop program {image}: permission denied for PID {', '.join(denied)}",
            )
        if killed:
            return CommandOutcome.ok(f"Program stopped successfully: {image}")
        return CommandOutcome.ok(f"{image} already stopped")

    def is_program_running(self, name: str) -> bool:
        image = normalize_image_name(name or "", self.suffix).lower()
        if not image:
            return False
        try:
            for proc in psutil.process_iter(["name"]):
                proc_name = (proc.info.get("name") or "").lower()
                if proc_name == image:
                    return True
        except Exception as e:
            logger.warning(f"Failed to list processes: {e}")
        return False

    # -------------------------------------------------------------------------
    # Host
    # -------------------------------------------------------------------------

    def restart_host(self) -> CommandOutcome:
        """Immediate, unconditional reboot. The host is gone once this succeeds."""
        args = ["shutdown", "/r", "/t", "0"] if self.is_windows else ["shutdown", "-r", "now"]
        logger.warning("Restart requested")
        result = self._call(args)
        if result.ok:
            return CommandOutcome.ok("Restart command sent successfully")
        return self._failure(result, "Failed to restart PC")

    # -------------------------------------------------------------------------
    # Network
    # -------------------------------------------------------------------------

    def _adapters_from_os(self) -> Optional[List[NetworkAdapter]]:
        if self.is_windows:
            script = (
                "Get-NetAdapter | Select-Object Name, Status, Virtual, InterfaceDescription "
                "| ConvertTo-Json -Compress"
            )
            result = self._call(self._powershell(script), timeout=QUERY_TIMEOUT)
            if not result.ok:
                return None
            try:
                data = json.loads(result.stdout or "[]")
            except json.JSONDecodeError:
                return None
            if isinstance(data, dict):
                data = [data]
            adapters = []
            for d in data:
                name = d.get("Name") or ""
                desc = d.get("InterfaceDescription") or ""
                status = d.get("Status") or ""
                adapters.append(NetworkAdapter(
                    name=name,
                    is_up=status == "Up",
                    is_disabled=status == "Disabled",
                    is_virtual=bool(d.get("Virtual")) or looks_virtual(name, desc),
                    description=desc,
                ))
            return adapters

        result = self._call(["ip", "-j", "link", "show"], timeout=QUERY_TIMEOUT)
        if not result.ok:
            return None
        try:
            data = json.loads(result.stdout or "[]")
        except json.JSONDecodeError:
            return None
        adapters = []
        for d in data:
            name = d.get("ifname") or ""
            flags = d.get("flags") or []
            adapters.append(NetworkAdapter(
                name=name,
                is_up="UP" in flags and d.get("operstate") != "DOWN",
                is_disabled="UP" not in flags,
                is_virtual=d.get("link_type") == "loopback" or looks_virtual(name),
                description=d.get("link_type") or "",
            ))
        return adapters

    def _adapters_from_psutil(self) -> Optional[List[NetworkAdapter]]:
        stats = psutil.net_if_stats()
        return [
            NetworkAdapter(
                name=name,
                is_up=bool(st.isup),
                is_disabled=not st.isup,
                is_virtual=looks_virtual(name),
            )
            for name, st in stats.items()
        ]

    def list_adapters(self) -> List[NetworkAdapter]:
        """Enumerate adapters with the first strategy that works."""
        for strategy in self.adapter_strategies:
            try:
                adapters = strategy()
            except Exception as e:
                logger.debug(f"Adapter strategy {strategy.__name__} failed: {e}")
                continue
            if adapters is not None:
                return adapters
        return []

    @staticmethod
    def _pick_route(routes: List[Tuple[str, int]]) -> Optional[str]:
        """Lowest metric wins; a tie between different adapters is ambiguous."""
        if not routes:
            return None
        best = min(metric for _, metric in routes)
        devices = {dev for dev, metric in routes if metric == best and dev}
        if len(devices) != 1:
            return None
        return devices.pop()

    def default_route_adapter(self) -> Optional[str]:
        """Name of the adapter carrying the default route, or None if unclear."""
        try:
            if self.is_windows:
                script = (
                    "Get-NetRoute -DestinationPrefix '0.0.0.0/0' "
                    "| Select-Object InterfaceAlias, RouteMetric, InterfaceMetric "
                    "| ConvertTo-Json -Compress"
                )
                result = self._call(self._powershell(script), timeout=QUERY_TIMEOUT)
                if not result.ok:
                    return None
                data = json.loads(result.stdout or "[]")
                if isinstance(data, dict):
                    data = [data]
                routes = [
                    (d.get("InterfaceAlias"), int(d.get("RouteMetric") or 0) + int(d.get("InterfaceMetric") or 0))
                    for d in data
                ]
            else:
                result = self._call(["ip", "-j", "route", "show", "default"], timeout=QUERY_TIMEOUT)
                if not result.ok:
                    return None
                data = json.loads(result.stdout or "[]")
                routes = [(d.get("dev"), int(d.get("metric") or 0)) for d in data]
        except (ValueError, TypeError, AttributeError) as e:
            logger.debug(f"Could not parse default route: {e}")
            return None
        return self._pick_route(routes)

    def _adapter_args(self, name: str, enable: bool) -> List[str]:
        if self.is_windows:
            verb = "Enable" if enable else "Disable"
            quoted = name.replace("'", "''")
            return self._powershell(f"{verb}-NetAdapter -Name '{quoted}' -Confirm:$false")
        return ["ip", "link", "set", "dev", name, "up" if enable else "down"]

    def set_network_connectivity(self, enabled: bool) -> CommandOutcome:
        """
        Toggle network connectivity on physical adapters.

        Disable targets the default-route adapter (first "up" adapter when the
        route is unknown or ambiguous). Enable targets every disabled adapter.
        Expect PermissionDenied when the agent is not elevated.
        """
        adapters = [a for a in self.list_adapters() if not a.is_virtual]
        if enabled:
            return self._enable_adapters(adapters)
        return self._disable_default_adapter(adapters)

    def _disable_default_adapter(self, adapters: List[NetworkAdapter]) -> CommandOutcome:
        up = [a for a in adapters if a.is_up]
        if not up:
            return CommandOutcome.failed(ErrorKind.NOT_FOUND, "No active network adapter found")

        target = None
        route_adapter = self.default_route_adapter()
        if route_adapter:
            target = next((a for a in up if a.name == route_adapter), None)
        if target is None:
            target = up[0]
            logger.info(f"Default route unclear, falling back to first active adapter '{target.name}'")

        result = self._call(self._adapter_args(target.name, enable=False))
        if result.ok:
            return CommandOutcome.ok(f"Internet disconnected (adapter '{target.name}' disabled)")
        return self._failure(result, f"Failed to disable adapter '{target.name}'")

    def _enable_adapters(self, adapters: List[NetworkAdapter]) -> CommandOutcome:
        disabled = [a for a in adapters if a.is_disabled]
        if not disabled:
            return CommandOutcome.ok("Internet already connected (no disabled adapters)")

        failures: List[Tuple[str, CommandResult]] = []
        for adapter in disabled:
            result = self._call(self._adapter_args(adapter.name, enable=True))
            if not result.ok:
                failures.append((adapter.name, result))

        enabled = [a.name for a in disabled if a.name not in {n for n, _ in failures}]
        if not failures:
            return CommandOutcome.ok(f"Internet reconnected (enabled: {', '.join(enabled)})")

        kinds = [self._kind_of(r) for _, r in failures]
        kind = ErrorKind.PERMISSION_DENIED if ErrorKind.PERMISSION_DENIED in kinds else kinds[0]
        details = "; ".join(f"'{name}': {r.error_text}" for name, r in failures)
        message = f"Failed to enable adapter(s) {details}"
        if enabled:
            message += f" (enabled: {', '.join(enabled)})"
        return CommandOutcome.failed(kind, message)

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    @staticmethod
    def _interfaces() -> Dict[str, List[Dict[str, Any]]]:
        families = {socket.AF_INET: "IPv4", socket.AF_INET6: "IPv6", psutil.AF_LINK: "MAC"}
        interfaces = {}
        for name, addrs in psutil.net_if_addrs().items():
            interfaces[name] = [
                {
                    "family": families.get(a.family, str(a.family)),
                    "address": a.address,
                    "netmask": a.netmask,
                }
                for a in addrs
            ]
        return interfaces

    def query_status(self) -> StatusSnapshot:
        """Collect a status snapshot. Never fails; missing fields are None."""
        memory = _safe(psutil.virtual_memory, "memory")
        load = _safe(psutil.getloadavg, "load")
        return StatusSnapshot(
            hostname=_safe(socket.gethostname, "hostname"),
            platform=sys.platform,
            arch=_safe(platform.machine, "arch") or None,
            uptime_seconds=_safe(lambda: round(time.time() - psutil.boot_time(), 1), "uptime"),
            total_memory=memory.total if memory is not None else None,
            free_memory=memory.available if memory is not None else None,
            load_average=[round(x, 2) for x in load] if load is not None else None,
            network_interfaces=_safe(self._interfaces, "interfaces"),
        )
