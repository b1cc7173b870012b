"""YAML configuration for the agent and controller, with environment variable support."""

import os
import re
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any, List, Optional, Type, TypeVar, Union, get_args, get_origin

import yaml

T = TypeVar('T')

AGENT_CONFIG_NAME = "agent"
CONTROLLER_CONFIG_NAME = "controller"

DEFAULT_SCAN_PREFIXES = ["192.168.0.", "192.168.1.", "10.0.0."]


@dataclass
class AgentConfig:
    host: str = "0.0.0.0"
    port: int = 3001
    hostname: Optional[str] = None       # Override the reported machine name
    command_timeout_s: float = 30
    restart_delay_s: float = 1.0         # Response goes out before the reboot
    listener_queue_size: int = 100
    keepalive_s: float = 15


@dataclass
class ControllerConfig:
    agents: List[str] = field(default_factory=list)
    agent_port: int = 3001
    poll_interval_s: float = 10
    status_timeout_s: float = 5
    identity_timeout_s: float = 3
    add_timeout_s: float = 10
    command_timeout_s: float = 30
    scan_prefixes: List[str] = field(default_factory=lambda: list(DEFAULT_SCAN_PREFIXES))
    scan_timeout_s: float = 1.5
    scan_workers: int = 64
    poll_workers: int = 16
    label_prefix: str = "Shepherd-"
    api_host: str = "127.0.0.1"
    api_port: int = 8080


def config_search_dirs() -> List[Path]:
    """Where to look for config files, in order."""
    dirs = []
    env_path = os.environ.get("SHEPHERD_CONFIG_DIR")
    if env_path:
        dirs.append(Path(env_path))
    dirs.append(Path.cwd() / "config")
    dirs.append(Path.home() / ".shepherd")
    return dirs


def find_config(name: str, ext: str = ".yaml") -> Optional[Path]:
    for directory in config_search_dirs():
        path = directory / f"{name}{ext}"
        if path.exists():
            return path
    return None


ENV_REF_RE = re.compile(r"\$\{(?P<name>[^}:]+)(?::-(?P<default>[^}]*))?\}")


def _env_value(match: "re.Match") -> str:
    value = os.environ.get(match.group("name"))
    if value is None:
        value = match.group("default")
    # Unset with no default: keep the reference verbatim
    return match.group(0) if value is None else value


def expand_env_vars(value: Any) -> Any:
    """
    Expand ${VAR} and ${VAR:-default} references through dicts, lists and strings.

    A string that is exactly one reference takes the YAML type of what it
    expands to (`port: ${PORT:-3001}` loads as int 3001); references inside a
    longer string are substituted as text.
    """
    if isinstance(value, dict):
        return {k: expand_env_vars(v) for k, v in value.items()}
    if isinstance(value, list):
        return [expand_env_vars(v) for v in value]
    if not isinstance(value, str):
        return value

    whole = ENV_REF_RE.fullmatch(value.strip())
    if whole:
        expanded = _env_value(whole)
        if expanded == whole.group(0) or not expanded.strip():
            return expanded
        try:
            return yaml.safe_load(expanded)
        except yaml.YAMLError:
            return expanded
    return ENV_REF_RE.sub(_env_value, value)


def load_yaml(path: Union[Path, str]) -> dict:
    """Read a config file; an empty file is an empty mapping."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    data = yaml.safe_load(path.read_text()) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping, not {type(data).__name__}")
    return expand_env_vars(data)


def _coerce(value: Any, field_type: Any) -> Any:
    """Bring a loaded value to the field's declared scalar type."""
    if value is None:
        return None
    if get_origin(field_type) is Union:
        # Optional[X] -> X
        args = [a for a in get_args(field_type) if a is not type(None)]
        field_type = args[0] if len(args) == 1 else Any
    if field_type is bool:
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)
    if field_type in (int, float) and isinstance(value, (str, int, float)) and not isinstance(value, bool):
        return field_type(value)
    if field_type is str and not isinstance(value, str):
        return str(value)
    return value


def dict_to_dataclass(data: dict, cls: Type[T]) -> T:
    """Convert a dict to a dataclass instance. Unknown keys are ignored."""
    if not is_dataclass(cls):
        raise TypeError(f"{cls} is not a dataclass")

    field_info = {f.name: f for f in fields(cls)}
    filtered = {}

    for key, value in data.items():
        if key not in field_info:
            continue
        filtered[key] = _coerce(value, field_info[key].type)

    return cls(**filtered)


def _load(name: str, cls: Type[T], path: Optional[Union[Path, str]]) -> T:
    if path is None:
        path = find_config(name)
        if path is None:
            return cls()
    return dict_to_dataclass(load_yaml(path), cls)


def load_agent_config(path: Optional[Union[Path, str]] = None) -> AgentConfig:
    """Load agent config from `path`, or the first agent.yaml found. Missing means defaults."""
    return _load(AGENT_CONFIG_NAME, AgentConfig, path)


def load_controller_config(path: Optional[Union[Path, str]] = None) -> ControllerConfig:
    """Load controller config from `path`, or the first controller.yaml found."""
    return _load(CONTROLLER_CONFIG_NAME, ControllerConfig, path)
