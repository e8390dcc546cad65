"""Atomic units of work with bounded, jittered exponential backoff."""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from sqlalchemy.exc import OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session

from config import get_settings
from errors import TransientStoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS = (OperationalError, PoolTimeoutError)


@dataclass(frozen=True)
class RetryPolicy:
    total: int  # retries after the first attempt
    base: float  # base backoff seconds
    cap: float  # max backoff seconds
    jitter: bool = True

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        settings = get_settings()
        return cls(
            total=settings.max_retries,
            base=settings.retry_base_secs,
            cap=settings.retry_cap_secs,
        )


def backoff_delay(policy: RetryPolicy, attempt: int) -> float:
    delay = min(policy.cap, policy.base * (2**attempt))
    if policy.jitter:
        delay = random.uniform(0, delay)
    return delay


def run_unit(
    session: Session,
    fn: Callable[[], T],
    policy: RetryPolicy,
    *,
    label: str,
) -> T:
    """Run ``fn`` as one transaction: every write lands or none do.

    ``fn`` is re-invoked from scratch on each attempt, so it must derive all of
    its writes from its inputs rather than from state left by a failed try.
    """
    attempt = 0
    while True:
        try:
            try:
                result = fn()
                session.commit()
                return result
            except TRANSIENT_ERRORS as exc:
                raise TransientStoreError(str(exc)) from exc
        except TransientStoreError as exc:
            session.rollback()
            if attempt >= policy.total:
                logger.warning(
                    f"unit_exhausted: label={label} attempts={attempt + 1} error={exc}"
                )
                raise
            delay = backoff_delay(policy, attempt)
            logger.info(
                f"unit_retry: label={label} attempt={attempt + 1} delay={delay:.3f}"
            )
            time.sleep(delay)
            attempt += 1
        except Exception:
            session.rollback()
            raise
