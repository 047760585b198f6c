"""
CLI Context for managing application dependencies.

Provides a clean way to manage CLI-level dependencies like settings and the
operations facade, avoiding global state and enabling dependency injection
in tests.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .operations import Operations, OpsConfig
from .settings import Settings, create_settings_from_env


@dataclass
class CLIContext:
    """
    Shared context for CLI commands.

    Settings are read from the environment once per command; the operations
    facade is built lazily on first use and reused afterwards.
    """
    settings: Settings
    config: OpsConfig
    _ops: Optional[Operations] = None

    @classmethod
    def from_env(cls, verbose: bool = False) -> CLIContext:
        """
        Create CLI context from environment variables.

        Returns:
            CLIContext with settings loaded from environment
        """
        return cls(settings=create_settings_from_env(), config=OpsConfig(verbose=verbose))

    @property
    def ops(self) -> Operations:
        """Operations facade bound to this context's settings."""
        if self._ops is None:
            self._ops = Operations(config=self.config, settings=self.settings)
        return self._ops
