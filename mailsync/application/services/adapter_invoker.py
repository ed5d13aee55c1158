"""Run one adapter call under a timeout and return a CallResult."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from mailsync.application.interfaces.services import ErrorClassifier
from mailsync.domain.entities.classified_error import CallResult, ClassifiedError
from mailsync.domain.enums import ErrorCategory

T = TypeVar("T")


async def invoke_adapter(
    call: Callable[[], Awaitable[T]],
    classify: ErrorClassifier,
    timeout: float,
) -> CallResult[T]:
    """Await call() within timeout seconds.

    Raw provider exceptions are classified into the returned CallResult; a
    call that exceeds timeout becomes a transient failure. Cancellation of
    the surrounding task still propagates.
    """
    try:
        async with asyncio.timeout(timeout):
            value = await call()
    except TimeoutError:
        return CallResult.failure(
            ClassifiedError(ErrorCategory.TRANSIENT, f"adapter call exceeded {timeout:g}s")
        )
    except Exception as e:
        return CallResult.failure(classify(e))
    return CallResult.success(value)
