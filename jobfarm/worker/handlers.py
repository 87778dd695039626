"""
Job function registry, function resolution and job execution.

Out-of-process workers only receive a function *name*. A name is either a
handler registered here or an importable reference such as
``"package.module:function"`` or ``"package.module.function"``.
"""

import importlib
import logging
import pickle
import time
import traceback
from collections.abc import Callable
from typing import Any

from jobfarm.constants import SPAN_EXECUTE_JOB
from jobfarm.errors import ConfigurationError
from jobfarm.observability.tracing import create_span
from jobfarm.types.job import JobOutcome

logger = logging.getLogger(__name__)

# Type alias for job functions
JobFunction = Callable[..., Any]

# Raised by pickle for values it cannot serialize
SERIALIZATION_ERRORS = (pickle.PicklingError, TypeError, AttributeError)

# Handler registry
_handlers: dict[str, JobFunction] = {}


def register_handler(name: str) -> Callable[[JobFunction], JobFunction]:
    """
    Decorator to register a job function under a short name.

    Args:
        name: The name workers resolve.

    Returns:
        Decorator function.

    Example:
        @register_handler("resize")
        def resize(path, width):
            ...
    """
    def decorator(handler: JobFunction) -> JobFunction:
        _handlers[name] = handler
        logger.debug(f"Registered handler: {name}")
        return handler
    return decorator


def get_handler(name: str) -> JobFunction | None:
    """
    Get a registered handler.

    Args:
        name: The handler name.

    Returns:
        The handler function or None if not found.
    """
    return _handlers.get(name)


def list_handlers() -> list[str]:
    """List all registered handler names."""
    return list(_handlers.keys())


def resolve_function(name: str) -> JobFunction:
    """
    Turn a function name into a callable.

    Registered handlers win; otherwise ``module:attr`` or dotted
    ``module.attr`` is imported.

    Raises:
        ConfigurationError: If the name cannot be resolved.
    """
    handler = get_handler(name)
    if handler is not None:
        return handler

    if ":" in name:
        module_path, _, attr_path = name.partition(":")
    else:
        module_path, _, attr_path = name.rpartition(".")

    if not module_path or not attr_path:
        raise ConfigurationError(f"No handler registered for '{name}'")

    try:
        target: Any = importlib.import_module(module_path)
        for attr in attr_path.split("."):
            target = getattr(target, attr)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError(f"Cannot resolve function '{name}': {e}") from e

    if not callable(target):
        raise ConfigurationError(f"'{name}' is not callable")
    return target


def function_name(function: JobFunction | str) -> str:
    """
    Get a name another process can resolve back to ``function``.

    Raises:
        ConfigurationError: For lambdas, nested functions and functions
            defined in ``__main__``, which a worker cannot import.
    """
    if isinstance(function, str):
        return function

    for name, handler in _handlers.items():
        if handler is function:
            return name

    module = getattr(function, "__module__", None)
    qualname = getattr(function, "__qualname__", None)
    if not module or not qualname:
        raise ConfigurationError(f"Cannot reference {function!r} by name")
    if "<lambda>" in qualname or "<locals>" in qualname:
        raise ConfigurationError(
            f"{qualname} is not importable; use a module-level function"
        )
    if module == "__main__":
        raise ConfigurationError(
            f"{qualname} is defined in __main__ and cannot be imported by a worker"
        )
    return f"{module}:{qualname}"


def execute_job(
    function: JobFunction,
    job_id: int,
    args: tuple[Any, ...],
    store: bool = True,
) -> JobOutcome:
    """
    Execute one job.

    Exceptions raised by the function are turned into a failed outcome.

    Args:
        function: The job function.
        job_id: 1-based job id.
        args: Positional arguments.
        store: Keep the return value in the outcome.

    Returns:
        JobOutcome for the job.
    """
    start = time.perf_counter()

    with create_span(SPAN_EXECUTE_JOB, job_id=job_id):
        try:
            value = function(*args)
        except Exception as e:
            logger.exception(
                "Job function raised exception",
                extra={"job_id": job_id, "error": str(e)},
            )
            return JobOutcome(
                job_id=job_id,
                success=False,
                error=f"{type(e).__name__}: {e}",
                traceback=traceback.format_exc(),
                duration_ms=(time.perf_counter() - start) * 1000,
            )

    return JobOutcome(
        job_id=job_id,
        success=True,
        value=value if store else None,
        duration_ms=(time.perf_counter() - start) * 1000,
    )


def serialization_failure(outcome: JobOutcome, error: Exception) -> JobOutcome:
    """
    Replace an outcome whose value cannot be transmitted with a failed one.

    Args:
        outcome: The outcome that failed to serialize.
        error: The exception raised by pickle.

    Returns:
        A failed outcome that always serializes.
    """
    logger.error(
        "Job result cannot be serialized",
        extra={"job_id": outcome.job_id, "error": str(error)},
    )
    return JobOutcome(
        job_id=outcome.job_id,
        success=False,
        error=f"Result cannot be serialized: {type(error).__name__}: {error}",
        duration_ms=outcome.duration_ms,
    )


# ============================================================================
# Built-in handlers
# ============================================================================


@register_handler("echo")
def handle_echo(*args: Any) -> tuple[Any, ...]:
    """Return the arguments unchanged."""
    return args


@register_handler("square")
def handle_square(x: Any) -> Any:
    """Return ``x * x``."""
    return x * x


@register_handler("sleep")
def handle_sleep(duration_seconds: float, value: Any = None) -> Any:
    """Sleep, then return ``value``."""
    time.sleep(duration_seconds)
    return value


@register_handler("fail")
def handle_fail(message: str = "Intentional failure") -> None:
    """Always raise."""
    raise RuntimeError(message)
