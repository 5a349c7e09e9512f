# config.py
from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Mapping, Optional

from .dag import DEFAULT_MAX_MATRIX


def _default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


def _env_bool(value: str) -> bool:
    v = value.strip().lower()
    if v in ("1", "true", "yes", "on"):
        return True
    if v in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"expected a boolean, got {value!r}")


@dataclass(frozen=True)
class EngineConfig:
    """
    Engine knobs. Defaults can be overridden from the environment
    (FLOWCI_*) and then from CLI options.
    """
    workers: int = 1
    fail_fast: bool = True
    grace_period: float = 10.0      # seconds a cancelled instance gets to stop
    timeout: Optional[float] = None  # pipeline-level timeout, seconds
    max_matrix: int = DEFAULT_MAX_MATRIX
    shell: str = "/bin/sh"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "EngineConfig":
        env = os.environ if environ is None else environ
        timeout = env.get("FLOWCI_TIMEOUT")
        return cls(
            workers=int(env.get("FLOWCI_WORKERS", _default_workers())),
            fail_fast=_env_bool(env.get("FLOWCI_FAIL_FAST", "true")),
            grace_period=float(env.get("FLOWCI_GRACE_PERIOD", "10")),
            timeout=float(timeout) if timeout else None,
            max_matrix=int(env.get("FLOWCI_MAX_MATRIX", DEFAULT_MAX_MATRIX)),
            shell=env.get("FLOWCI_SHELL", "/bin/sh"),
        )

    def override(self, **values) -> "EngineConfig":
        """Return a copy with every non-None value applied."""
        return replace(self, **{k: v for k, v in values.items() if v is not None})
