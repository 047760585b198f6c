"""
Operations package - Application service layer between CLI and the image APIs.

This package provides the Operations facade that orchestrates CLI commands,
centralizes error mapping, and handles output formatting while keeping
CLI commands thin and testable.
"""
from .facade import CommitResult, ConfigEdits, HistoryOptions, ImageStat, Operations, OpsConfig, UnpackResult
from .mappers import exit_code_for, run_and_exit

__all__ = [
    "Operations",
    "OpsConfig",
    "HistoryOptions",
    "ConfigEdits",
    "CommitResult",
    "UnpackResult",
    "ImageStat",
    "exit_code_for",
    "run_and_exit",
]
