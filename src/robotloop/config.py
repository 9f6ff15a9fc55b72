"""Robotloop configuration management."""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path

ROBOTLOOP_HOME = Path(os.environ.get("ROBOTLOOP_HOME", Path.home() / ".robotloop"))
ROBOTLOOP_DB = ROBOTLOOP_HOME / "robotloop.db"
ROBOTLOOP_CONFIG = ROBOTLOOP_HOME / "config.json"
ROBOTLOOP_LOGS = ROBOTLOOP_HOME / "logs"


@dataclass
class ApiConfig:
    """Remote robot API endpoint and call-harness policy."""

    base_url: str = ""
    api_key: str = ""
    timeout_seconds: float = 300.0
    max_attempts: int = 3
    initial_backoff_seconds: float = 1.0
    max_backoff_seconds: float = 30.0


@dataclass
class LoopConfig:
    """Plan cycle limits and waits."""

    max_cycles: int = 100  # Safety cap
    cycle_interval_seconds: float = 3.0
    attention_wait_seconds: float = 300.0
    max_attention_retries: int = 1
    replan_context_entries: int = 3


@dataclass
class EscalationConfig:
    """Human intervention routing."""

    agent_id: str = "robot-agent"
    origin: str = "whatsapp"
    default_user_id: str = "system"


_SECTIONS = ("api", "loop", "escalation")


@dataclass
class RobotloopConfig:
    """Top-level robotloop configuration."""

    api: ApiConfig = field(default_factory=ApiConfig)
    loop: LoopConfig = field(default_factory=LoopConfig)
    escalation: EscalationConfig = field(default_factory=EscalationConfig)

    @classmethod
    def load(cls, path: Path | None = None, *, env: bool = True) -> "RobotloopConfig":
        """Load config from disk or return defaults.

        ROBOTLOOP_API_BASE_URL and ROBOTLOOP_API_KEY override the file values
        unless ``env`` is False. Load with ``env=False`` before ``save`` so
        environment secrets are never written to the file.
        """
        path = path or ROBOTLOOP_CONFIG
        config = cls()
        if path.exists():
            data = json.loads(path.read_text())
            for section in _SECTIONS:
                if section in data:
                    for k, v in data[section].items():
                        setattr(getattr(config, section), k, v)

        if not env:
            return config

        base_url = os.environ.get("ROBOTLOOP_API_BASE_URL")
        api_key = os.environ.get("ROBOTLOOP_API_KEY")
        if base_url:
            config.api.base_url = base_url
        if api_key:
            config.api.api_key = api_key

        return config

    def save(self, path: Path | None = None) -> None:
        """Persist config to disk."""
        path = path or ROBOTLOOP_CONFIG
        path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "api": {
                "base_url": self.api.base_url,
                "api_key": self.api.api_key,
                "timeout_seconds": self.api.timeout_seconds,
                "max_attempts": self.api.max_attempts,
                "initial_backoff_seconds": self.api.initial_backoff_seconds,
                "max_backoff_seconds": self.api.max_backoff_seconds,
            },
            "loop": {
                "max_cycles": self.loop.max_cycles,
                "cycle_interval_seconds": self.loop.cycle_interval_seconds,
                "attention_wait_seconds": self.loop.attention_wait_seconds,
                "max_attention_retries": self.loop.max_attention_retries,
                "replan_context_entries": self.loop.replan_context_entries,
            },
            "escalation": {
                "agent_id": self.escalation.agent_id,
                "origin": self.escalation.origin,
                "default_user_id": self.escalation.default_user_id,
            },
        }
        path.write_text(json.dumps(data, indent=2))

    def set_value(self, key: str, value: str) -> None:
        """Set a dotted key such as ``loop.max_cycles``.

        The string value is coerced to the type of the current value.
        Raises ValueError for unknown keys or values that don't coerce.
        """
        section, _, name = key.partition(".")
        if section not in _SECTIONS or not name:
            raise ValueError(f"Unknown config key: {key}")
        target = getattr(self, section)
        if not hasattr(target, name):
            raise ValueError(f"Unknown config key: {key}")

        current = getattr(target, name)
        if isinstance(current, bool):
            coerced = value.lower() in ("1", "true", "yes", "on")
        elif isinstance(current, int):
            coerced = int(value)
        elif isinstance(current, float):
            coerced = float(value)
        else:
            coerced = value
        setattr(target, name, coerced)


def ensure_robotloop_home() -> None:
    """Create robotloop home directory structure."""
    ROBOTLOOP_HOME.mkdir(parents=True, exist_ok=True)
    ROBOTLOOP_LOGS.mkdir(parents=True, exist_ok=True)
