"""
Retries for provider calls.

Transient errors are retried after each delay in the backoff sequence.
When the sequence is exhausted the last error escalates unchanged.
Permanent errors escalate at once. Anything that is not a ProviderError is
wrapped into a PermanentProviderError attributed to the address.
"""

from __future__ import annotations

import itertools
import time
from typing import Callable, Optional, Sequence, TypeVar

import structlog

from cluster_orchestrator.core.errors import (
    PermanentProviderError,
    ProviderError,
    TransientProviderError,
)

T = TypeVar("T")

log = structlog.get_logger(__name__)


def call_with_retries(
    fn: Callable[[], T],
    *,
    what: str,
    address: str,
    backoffs: Sequence[float],
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    count = len(backoffs) + 1
    backoff: Optional[float]
    for attempt, backoff in enumerate(itertools.chain(backoffs, [None]), start=1):
        idx = f"#{attempt}/{count}"
        try:
            if attempt > 1:
                log.debug("provider call attempt", attempt=idx, call=what, address=address)
            result = fn()

        except TransientProviderError as e:
            if e.address is None:
                e.address = address
            if backoff is None:
                log.error(
                    "provider call failed; escalating",
                    attempt=idx,
                    call=what,
                    address=address,
                    error=str(e),
                )
                raise
            log.warning(
                "provider call failed; will retry",
                attempt=idx,
                call=what,
                address=address,
                error=str(e),
                backoff=backoff,
            )
            sleep(backoff)

        except ProviderError as e:
            if e.address is None:
                e.address = address
            raise

        except Exception as e:
            raise PermanentProviderError(f"{what} failed: {e!r}", address=address) from e

        else:
            if attempt > 1:
                log.info(
                    "provider call succeeded after retry", attempt=idx, call=what, address=address
                )
            return result

    raise RuntimeError("Broken retryable routine.")  # impossible, but needed for type-checking.
