"""
Configuration management for the scenario harness.
"""

import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional

import yaml

from ..config import DEFAULT_BLOCK_TIME_SECS, DEFAULT_TIMEOUT_SECS, SETTLEMENT_DELAY_BLOCKS

DEFAULT_ENDPOINT = "ws://127.0.0.1:9944"
ALL_SCENARIOS = ("task_mode", "compute_pool", "agent_attestation", "zk_compute", "settlement")


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").lower() in ("true", "1", "yes")


@dataclass
class HarnessConfig:
    """Main configuration for the scenario harness."""
    # Remote system
    endpoint: str = DEFAULT_ENDPOINT
    dev: bool = False
    block_time: float = DEFAULT_BLOCK_TIME_SECS

    # Paths
    result_dir: str = "./results"

    # Execution settings
    scenarios: List[str] = field(default_factory=lambda: list(ALL_SCENARIOS))
    stop_on_first_failure: bool = False
    verbose: bool = False

    # Timeouts and chain parameters
    timeout: float = DEFAULT_TIMEOUT_SECS
    settlement_delay: int = SETTLEMENT_DELAY_BLOCKS

    @classmethod
    def from_env(cls) -> "HarnessConfig":
        """Load configuration from environment variables."""
        config = cls()

        config.endpoint = os.environ.get("CHAINPROBE_ENDPOINT", DEFAULT_ENDPOINT)
        config.result_dir = os.environ.get("RESULT_DIR", config.result_dir)

        timeout = os.environ.get("CHAINPROBE_TIMEOUT")
        if timeout:
            config.timeout = float(timeout)
        delay = os.environ.get("CHAINPROBE_SETTLEMENT_DELAY")
        if delay:
            config.settlement_delay = int(delay)

        config.dev = _env_flag("CHAINPROBE_DEV")
        config.verbose = _env_flag("VERBOSE")
        config.stop_on_first_failure = _env_flag("STOP_ON_FIRST_FAILURE")

        return config

    @classmethod
    def from_yaml(cls, path: str, base: Optional["HarnessConfig"] = None) -> "HarnessConfig":
        """
        Load configuration from a YAML mapping, on top of `base`.

        Args:
            path: YAML file whose keys are HarnessConfig field names
            base: Starting configuration (default: HarnessConfig())

        Returns:
            HarnessConfig with the file's values applied
        """
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{path}: expected a mapping at the top level")
        return (base or cls()).merged(data)

    def merged(self, overrides: Dict[str, Any]) -> "HarnessConfig":
        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise ValueError(f"unknown configuration keys: {', '.join(sorted(unknown))}")
        values = {f.name: getattr(self, f.name) for f in fields(self)}
        values.update(overrides)
        config = HarnessConfig(**values)
        config.validate()
        return config

    def validate(self) -> None:
        if self.timeout <= 0:
            raise ValueError("timeout must be positive")
        if self.settlement_delay < 0:
            raise ValueError("settlement_delay must not be negative")
        if not isinstance(self.scenarios, list) or not all(isinstance(s, str) for s in self.scenarios):
            raise ValueError(f"scenarios must be a list of names, got {self.scenarios!r}")
        unknown = [s for s in self.scenarios if s not in ALL_SCENARIOS]
        if unknown:
            raise ValueError(f"unknown scenarios: {', '.join(unknown)}")
