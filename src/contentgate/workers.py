"""Polling loop shared by the verifier and processor bots."""

import logging
import time
from typing import Callable, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

# Idle backoff grows by 20% of the poll interval per empty poll, capped at 5x.
BACKOFF_STEP = 0.2
BACKOFF_CAP = 5.0


class WorkerSummary(BaseModel):
    """What one worker loop did before it stopped."""

    handled: int = 0
    idle_polls: int = 0
    results: list = Field(default_factory=list)


def run_worker(
    step: Callable[[], Optional[BaseModel]],
    max_items: Optional[int] = None,
    poll_interval: float = 1.0,
    idle_exit: bool = True,
    sleep: Callable[[float], None] = time.sleep,
    should_stop: Optional[Callable[[], bool]] = None,
) -> WorkerSummary:
    """Call ``step`` until it runs dry or ``max_items`` results were produced.

    Args:
        step: A bot's ``verify_next`` or ``process_next``; None means idle
        max_items: Stop after this many results (None = unbounded)
        poll_interval: Base sleep between idle polls, in seconds
        idle_exit: Return on the first idle poll instead of backing off
        sleep: Sleep function (injectable for tests)
        should_stop: Checked before every poll; True ends the loop

    Returns:
        WorkerSummary with every result in the order produced
    """
    summary = WorkerSummary()
    idle_cycles = 0

    while max_items is None or summary.handled < max_items:
        if should_stop is not None and should_stop():
            logger.info("Worker stop requested")
            break

        result = step()
        if result is None:
            summary.idle_polls += 1
            if idle_exit:
                break
            idle_cycles += 1
            sleep(min(poll_interval * (1 + idle_cycles * BACKOFF_STEP), poll_interval * BACKOFF_CAP))
            continue

        idle_cycles = 0
        summary.handled += 1
        summary.results.append(result)

    logger.info(f"Worker finished: {summary.handled} handled, {summary.idle_polls} idle poll(s)")
    return summary
