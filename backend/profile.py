"""
Profile System — loads profile.yaml and provides validated configuration.

The profile is the single source of truth for all user-configurable settings:
system name, base prompt, inference endpoint, tool gateway command and
readiness signals, context budgeting, prefix cache and web binding.

Usage:
    from profile import get_profile
    profile = get_profile()
    print(profile.inference.endpoint_url)
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)

# ── Profile Path Resolution ──
_PROFILE_PATH_ENV = os.environ.get("RELAY_PROFILE_PATH")
_PROJECT_ROOT = Path(__file__).parent.parent
_DEFAULT_PROFILE_PATH = _PROJECT_ROOT / "profile.yaml"


# ── Dataclasses ──

@dataclass
class SystemConfig:
    name: str = "Relay"
    base_prompt: str = "You are a helpful assistant."


@dataclass
class InferenceConfig:
    host: str = "localhost"
    port: int = 12434
    path: str = "/engines/llama.cpp/v1/chat/completions"
    default_model: str = ""
    timeout_seconds: float = 300
    default_context: int = 8192
    native_tool_calls: bool = False

    @property
    def endpoint_url(self) -> str:
        override = os.environ.get("RELAY_INFERENCE_URL")
        if override:
            return override
        return f"http://{self.host}:{self.port}{self.path}"


@dataclass
class GatewayConfig:
    command: list[str] = field(default_factory=lambda: ["docker", "mcp", "gateway", "run"])
    ready_sentinel: str = "RELAY_GATEWAY_READY"
    ready_phrases: list[str] = field(default_factory=lambda: [
        "Initialized in",
        "Start stdio server",
    ])
    progress_phrases: list[str] = field(default_factory=lambda: ["pulling docker image"])
    ready_timeout_seconds: float = 120
    poll_interval_seconds: float = 0.5
    stop_grace_seconds: float = 1.0
    request_timeout_seconds: float = 60
    config_dir: str = ""  # empty -> ~/.relay/mcp


@dataclass
class ContextConfig:
    history_ratio: float = 0.75
    min_recommended_context: int = 16384
    recommended_multiplier: float = 1.5
    round_to: int = 1024


@dataclass
class CacheConfig:
    ttl_seconds: float = 3600
    max_entries: int = 100
    prefix_turns: int = 3


@dataclass
class WebConfig:
    host: str = "127.0.0.1"
    port: int = 8000
    cors_origins: list[str] = field(default_factory=lambda: [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ])


@dataclass
class Profile:
    system: SystemConfig = field(default_factory=SystemConfig)
    inference: InferenceConfig = field(default_factory=InferenceConfig)
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    context: ContextConfig = field(default_factory=ContextConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    web: WebConfig = field(default_factory=WebConfig)

    def gateway_config_dir(self) -> Path:
        """Directory where generated gateway override files are written."""
        if self.gateway.config_dir:
            return Path(self.gateway.config_dir).expanduser()
        return Path.home() / ".relay" / "mcp"


# ── Parsing ──

def _parse_dict(data: dict, cls, **overrides):
    """Create a dataclass instance from a dict, ignoring unknown keys."""
    import dataclasses
    field_names = {f.name for f in dataclasses.fields(cls)}
    filtered = {k: v for k, v in data.items() if k in field_names}
    filtered.update(overrides)
    return cls(**filtered)


def _load_profile_from_dict(raw: dict) -> Profile:
    """Parse a raw YAML dict into a Profile dataclass."""
    profile = Profile()

    if "system" in raw and isinstance(raw["system"], dict):
        profile.system = _parse_dict(raw["system"], SystemConfig)

    if "inference" in raw and isinstance(raw["inference"], dict):
        profile.inference = _parse_dict(raw["inference"], InferenceConfig)

    if "gateway" in raw and isinstance(raw["gateway"], dict):
        gw_raw = raw["gateway"].copy()
        command = os.environ.get("RELAY_GATEWAY_COMMAND")
        if command:
            gw_raw["command"] = command.split()
        elif isinstance(gw_raw.get("command"), str):
            gw_raw["command"] = gw_raw["command"].split()
        profile.gateway = _parse_dict(gw_raw, GatewayConfig)
    elif os.environ.get("RELAY_GATEWAY_COMMAND"):
        profile.gateway = GatewayConfig(command=os.environ["RELAY_GATEWAY_COMMAND"].split())

    if "context" in raw and isinstance(raw["context"], dict):
        profile.context = _parse_dict(raw["context"], ContextConfig)

    if "cache" in raw and isinstance(raw["cache"], dict):
        profile.cache = _parse_dict(raw["cache"], CacheConfig)

    if "web" in raw and isinstance(raw["web"], dict):
        profile.web = _parse_dict(raw["web"], WebConfig)

    return profile


def _load_profile() -> Profile:
    """Load profile from YAML file. Falls back to defaults if missing."""
    profile_path = Path(_PROFILE_PATH_ENV) if _PROFILE_PATH_ENV else _DEFAULT_PROFILE_PATH

    if not profile_path.exists():
        logger.info("No profile.yaml found at %s — using defaults", profile_path)
        return _load_profile_from_dict({})

    try:
        raw = yaml.safe_load(profile_path.read_text()) or {}
        if not isinstance(raw, dict):
            logger.warning("profile.yaml is not a valid YAML mapping — using defaults")
            return Profile()
        profile = _load_profile_from_dict(raw)
        logger.info("Profile loaded: system=%s, endpoint=%s, gateway=%s",
                    profile.system.name, profile.inference.endpoint_url,
                    " ".join(profile.gateway.command))
        return profile
    except Exception as e:
        logger.error("Failed to load profile.yaml: %s — using defaults", e)
        return Profile()


# ── Singleton ──

_profile: Optional[Profile] = None


def get_profile() -> Profile:
    """Return the validated profile singleton. Loads on first call."""
    global _profile
    if _profile is None:
        _profile = _load_profile()
    return _profile


def reload_profile() -> Profile:
    """Force reload of the profile from disk."""
    global _profile
    _profile = _load_profile()
    return _profile
