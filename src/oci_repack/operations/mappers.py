"""
Error mapping and CLI utilities.

Provides centralized exception-to-exit-code mapping and CLI command wrappers
to ensure consistent error handling across all Typer commands.
"""
from __future__ import annotations

import logging
import typer
from typing import Callable, TypeVar

T = TypeVar('T')

logger = logging.getLogger(__name__)

# Exit codes by exception class name
EXIT_CODES = {
    "OciNotFound": 1,
    "FileNotFoundError": 1,
    "ValidationError": 2,
    "ValueError": 2,
    "OciDigestMismatch": 4,
    "OciUnsupportedMediaType": 5,
    "OciAmbiguousReference": 6,
    "OciInvalidState": 7,
}


def exit_code_for(exc: BaseException) -> int:
    """
    Map exception to standardized exit code.

    Returns exit codes:
    - 0: Success
    - 1: Blob, reference, layout or input file not found
    - 2: Invalid argument (ValueError, ValidationError)
    - 3: Storage or unknown error
    - 4: Digest mismatch (corrupt blob)
    - 5: Unsupported media type
    - 6: Ambiguous reference
    - 7: Invalid state (history inconsistency, misuse of a closed handle)

    Args:
        exc: Exception to map

    Returns:
        Exit code (1-7, with 3 as fallback for unknown exceptions)
    """
    return EXIT_CODES.get(type(exc).__name__, 3)


def run_and_exit(func: Callable[[], T]) -> T:
    """
    Unified error wrapper for CLI commands.

    Executes the given function and maps any exceptions to appropriate
    exit codes using typer.Exit. The error message goes to stderr; the
    traceback is only logged at debug level.

    Args:
        func: Function to execute

    Returns:
        Function result if successful

    Raises:
        typer.Exit: With appropriate exit code if function raises exception
    """
    try:
        return func()
    except typer.Exit:
        raise
    except Exception as e:
        logger.debug("Command failed", exc_info=True)
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=exit_code_for(e)) from e
