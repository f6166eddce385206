"""Global settings for turnrelay.

Settings are stored in ~/.turnrelay/settings.yaml (or $TURNRELAY_HOME) and include:
- detector: turn detection timing and size cap
- registry: ring depth and closed-session retention
- sinks: delivery timeout and clipboard tool candidates
- wrap: session wrapper behaviour
- log: log level

Values are read leniently: a missing or malformed value falls back to its
default. Only an inconsistent detector timing raises ConfigError.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import yaml  # type: ignore

from ..errors import ConfigError
from ..paths import settings_path
from ..util.conv import coerce_bool, coerce_float, coerce_int
from ..util.fs import atomic_write_text
from .detector import DEFAULT_CONFIRM_INTERVAL, DEFAULT_MAX_TURN_BYTES, DEFAULT_QUIET_INTERVAL, DetectorConfig
from .registry import DEFAULT_RING_DEPTH

DEFAULT_CLIPBOARD_COMMANDS: List[List[str]] = [
    ["wl-copy"],
    ["xclip", "-selection", "clipboard"],
    ["xsel", "--clipboard", "--input"],
    ["pbcopy"],
]

DETECT_MODES = ("local", "broker")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

MAX_TURN_BYTES_LIMIT = 256 * 1024 * 1024


@dataclass
class DetectorSettings:
    quiet_interval_s: float = DEFAULT_QUIET_INTERVAL
    confirm_interval_s: float = DEFAULT_CONFIRM_INTERVAL
    max_turn_bytes: int = DEFAULT_MAX_TURN_BYTES
    require_input: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "quiet_interval_s": self.quiet_interval_s,
            "confirm_interval_s": self.confirm_interval_s,
            "max_turn_bytes": self.max_turn_bytes,
            "require_input": self.require_input,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "DetectorSettings":
        base = cls()
        return cls(
            quiet_interval_s=coerce_float(d.get("quiet_interval_s"), base.quiet_interval_s, min_value=0.01, max_value=60.0),
            confirm_interval_s=coerce_float(
                d.get("confirm_interval_s"), base.confirm_interval_s, min_value=0.02, max_value=600.0
            ),
            max_turn_bytes=coerce_int(d.get("max_turn_bytes"), base.max_turn_bytes, min_value=1, max_value=MAX_TURN_BYTES_LIMIT),
            require_input=coerce_bool(d.get("require_input"), default=base.require_input),
        )


@dataclass
class RegistrySettings:
    ring_depth: int = DEFAULT_RING_DEPTH
    max_closed_sessions: int = 16

    def to_dict(self) -> Dict[str, Any]:
        return {"ring_depth": self.ring_depth, "max_closed_sessions": self.max_closed_sessions}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "RegistrySettings":
        base = cls()
        return cls(
            ring_depth=coerce_int(d.get("ring_depth"), base.ring_depth, min_value=1, max_value=10_000),
            max_closed_sessions=coerce_int(d.get("max_closed_sessions"), base.max_closed_sessions, min_value=0, max_value=10_000),
        )


@dataclass
class SinkSettings:
    delivery_timeout_s: float = 5.0
    clipboard_commands: List[List[str]] = field(default_factory=lambda: [list(c) for c in DEFAULT_CLIPBOARD_COMMANDS])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "delivery_timeout_s": self.delivery_timeout_s,
            "clipboard_commands": [list(c) for c in self.clipboard_commands],
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "SinkSettings":
        base = cls()
        commands: List[List[str]] = []
        raw = d.get("clipboard_commands")
        if isinstance(raw, list):
            for item in raw:
                if isinstance(item, str) and item.strip():
                    commands.append(item.split())
                elif isinstance(item, list) and item and all(isinstance(x, str) and x for x in item):
                    commands.append([str(x) for x in item])
        return cls(
            delivery_timeout_s=coerce_float(d.get("delivery_timeout_s"), base.delivery_timeout_s, min_value=0.1, max_value=120.0),
            clipboard_commands=commands or base.clipboard_commands,
        )


@dataclass
class WrapSettings:
    bracketed_paste: bool = True
    detect: str = "local"

    def to_dict(self) -> Dict[str, Any]:
        return {"bracketed_paste": self.bracketed_paste, "detect": self.detect}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "WrapSettings":
        base = cls()
        detect = str(d.get("detect") or "").strip().lower()
        return cls(
            bracketed_paste=coerce_bool(d.get("bracketed_paste"), default=base.bracketed_paste),
            detect=detect if detect in DETECT_MODES else base.detect,
        )


@dataclass
class RelaySettings:
    detector: DetectorSettings = field(default_factory=DetectorSettings)
    registry: RegistrySettings = field(default_factory=RegistrySettings)
    sinks: SinkSettings = field(default_factory=SinkSettings)
    wrap: WrapSettings = field(default_factory=WrapSettings)
    log_level: str = "INFO"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "detector": self.detector.to_dict(),
            "registry": self.registry.to_dict(),
            "sinks": self.sinks.to_dict(),
            "wrap": self.wrap.to_dict(),
            "log": {"level": self.log_level},
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "RelaySettings":
        def _section(name: str) -> Dict[str, Any]:
            v = d.get(name)
            return v if isinstance(v, dict) else {}

        level = str(_section("log").get("level") or "").strip().upper()
        settings = cls(
            detector=DetectorSettings.from_dict(_section("detector")),
            registry=RegistrySettings.from_dict(_section("registry")),
            sinks=SinkSettings.from_dict(_section("sinks")),
            wrap=WrapSettings.from_dict(_section("wrap")),
            log_level=level if level in LOG_LEVELS else "INFO",
        )
        # Fail early on a timing pair the detector would reject.
        detector_config(settings)
        return settings


def load_settings() -> Dict[str, Any]:
    """Load the raw settings document; missing or unreadable files yield {}."""
    p = settings_path()
    if not p.exists():
        return {}
    try:
        doc = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError):
        return {}
    return doc if isinstance(doc, dict) else {}


def save_settings(settings: Dict[str, Any]) -> None:
    p = settings_path()
    p.parent.mkdir(parents=True, exist_ok=True)
    atomic_write_text(p, yaml.safe_dump(settings, allow_unicode=True, sort_keys=False))


def get_settings(doc: Optional[Dict[str, Any]] = None) -> RelaySettings:
    return RelaySettings.from_dict(load_settings() if doc is None else doc)


def detector_config(settings: RelaySettings, *, require_input: Optional[bool] = None) -> DetectorConfig:
    d = settings.detector
    try:
        return DetectorConfig(
            quiet_interval=float(d.quiet_interval_s),
            confirm_interval=float(d.confirm_interval_s),
            max_turn_bytes=int(d.max_turn_bytes),
            require_input=d.require_input if require_input is None else bool(require_input),
        )
    except ConfigError as e:
        raise ConfigError(f"invalid detector settings: {e.message}", details=e.details) from e
