"""Domain Utilities - Helpers shared by the pipeline services.

Security Impact:
    - No security impact - pure utility functions
"""

import hashlib
import json
import logging
import threading
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, Optional, TypeVar

from clinical_rag.domain.ports import ExternalCapabilityError

logger = logging.getLogger(__name__)

T = TypeVar('T')


def _start_call(func: Callable[..., T], args: tuple, kwargs: dict, name: str) -> Future:
    """Run ``func`` on its own daemon thread; the clock starts when the thread does."""
    future: Future = Future()

    def _runner() -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            future.set_result(func(*args, **kwargs))
        except BaseException as e:
            future.set_exception(e)

    threading.Thread(target=_runner, name=name, daemon=True).start()
    return future


def run_with_timeout(
    func: Callable[..., T],
    *args: Any,
    timeout: Optional[float] = None,
    capability: str = "external",
    stage: Optional[str] = None,
    **kwargs: Any
) -> T:
    """Run an external call with a wall-clock timeout.

    Exceptions raised by ``func`` propagate unchanged so callers can keep their
    own error types. Each call gets a dedicated worker thread, so concurrent
    callers never queue behind each other and only the call's own running time
    counts against ``timeout``. A call that does not finish in time surfaces as
    ExternalCapabilityError with ``timed_out=True``; the worker thread is
    abandoned, not interrupted.

    Parameters:
        func: Callable performing the external call
        timeout: Seconds to wait, or None to wait indefinitely
        capability: Capability name recorded on a timeout error
        stage: Pipeline stage recorded on a timeout error

    Returns:
        Whatever ``func`` returns

    Raises:
        ExternalCapabilityError: If the call times out
    """
    if timeout is None:
        return func(*args, **kwargs)

    future = _start_call(func, args, kwargs, name=f"{capability}-call")
    try:
        return future.result(timeout=timeout)
    except FutureTimeoutError as e:
        logger.warning(f"{capability} call timed out after {timeout}s (stage={stage})")
        raise ExternalCapabilityError(
            f"{capability} call timed out after {timeout} seconds",
            capability=capability,
            stage=stage,
            timed_out=True
        ) from e


def canonical_json(data: Any) -> str:
    """Deterministic JSON serialization (sorted keys, compact separators)."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str, ensure_ascii=False)


def content_fingerprint(data: Any) -> str:
    """SHA-256 hex digest of the canonical JSON form of ``data``.

    Used for deduplication and audit correlation only, never for security.
    """
    return hashlib.sha256(canonical_json(data).encode("utf-8")).hexdigest()
