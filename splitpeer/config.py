"""
Configuration for splitpeer nodes.

Values come from keyword arguments, SPLITPEER_* environment variables or a
JSON file (SPLITPEER_CONFIG points at one). Out-of-range values are clamped
rather than rejected so a bad setting never prevents a node from starting.
"""

import json
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional


ENV_PREFIX = "SPLITPEER_"

MIN_REINIT_DELAY_SECONDS = 0.0
MAX_REINIT_DELAY_SECONDS = 300.0


@dataclass
class SplitPeerConfig:
    """Settings for one splitpeer node."""
    signaling_url: str = "https://0.peerjs.com"
    signaling_key: str = "peerjs"
    signaling_timeout: float = 10.0
    # Fixed delay before recreating the identity after a fatal error.
    reinit_delay_seconds: float = 5.0
    # Soft UI timeout for a join attempt; the attempt itself is not cancelled.
    join_timeout_seconds: float = 15.0
    invite_base_url: str = "https://splitpeer.app/"
    state_db_path: str = ""

    def __post_init__(self):
        self.signaling_url = (self.signaling_url or "").strip().rstrip("/")
        self.signaling_key = (self.signaling_key or "peerjs").strip()
        self.signaling_timeout = max(1.0, float(self.signaling_timeout))
        self.reinit_delay_seconds = min(
            MAX_REINIT_DELAY_SECONDS,
            max(MIN_REINIT_DELAY_SECONDS, float(self.reinit_delay_seconds)),
        )
        self.join_timeout_seconds = max(0.0, float(self.join_timeout_seconds))
        self.invite_base_url = (self.invite_base_url or "").strip()
        self.state_db_path = os.path.expanduser((self.state_db_path or "").strip())

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SplitPeerConfig":
        """Build from a dict, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    @classmethod
    def from_file(cls, path: str) -> "SplitPeerConfig":
        with open(Path(path).expanduser()) as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"config file {path} must contain a JSON object")
        return cls.from_dict(data)

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "SplitPeerConfig":
        """
        Build from the environment.

        SPLITPEER_CONFIG, when set, names a JSON file loaded first; individual
        SPLITPEER_<FIELD> variables override values from that file.
        """
        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {}

        config_path = environ.get(f"{ENV_PREFIX}CONFIG")
        if config_path:
            values.update(cls.from_file(config_path).to_dict())

        for f in fields(cls):
            raw = environ.get(f"{ENV_PREFIX}{f.name.upper()}")
            if raw is None:
                continue
            if f.type in (float, "float"):
                try:
                    values[f.name] = float(raw)
                except ValueError:
                    raise ValueError(f"{ENV_PREFIX}{f.name.upper()} must be a number, got {raw!r}")
            else:
                values[f.name] = raw

        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}
