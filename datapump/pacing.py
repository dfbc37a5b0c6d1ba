"""Pacing between two batch iterations."""

import threading
import time

import structlog

from datapump.config import DEFAULT_MAX_SECONDS_BETWEEN_BATCHES

log = structlog.get_logger()


def pace(
    start_time: float,
    seconds_between_batches: float,
    max_seconds_between_batches: float = DEFAULT_MAX_SECONDS_BETWEEN_BATCHES,
    stop: threading.Event | None = None,
) -> bool:
    """
    Block until the next batch is due.

    The next batch is due seconds_between_batches after start_time, but
    never later than max_seconds_between_batches after it. If the batch
    already took longer than the maximum, returns at once with a warning.

    Args:
        start_time: time.monotonic() at the start of the iteration
        seconds_between_batches: Target interval between batch starts
        max_seconds_between_batches: Ceiling on the interval
        stop: Set by the shutdown handler, interrupts the wait

    Returns:
        True if the wait was interrupted by stop, False otherwise.
    """
    if stop is None:
        stop = threading.Event()

    elapsed = time.monotonic() - start_time

    if elapsed > max_seconds_between_batches:
        log.warning(
            "max_time_between_batches_reached",
            max_seconds=max_seconds_between_batches,
            elapsed_seconds=round(elapsed, 3),
        )
        return stop.is_set()

    wait = min(
        seconds_between_batches - elapsed,
        max_seconds_between_batches - elapsed,
    )
    if wait <= 0:
        return stop.is_set()

    log.info("waiting_for_next_batch", seconds=round(wait, 1))
    if stop.wait(wait):
        return True

    # Waited up to the ceiling rather than the target interval
    if seconds_between_batches > max_seconds_between_batches:
        log.warning(
            "max_time_between_batches_reached",
            max_seconds=max_seconds_between_batches,
            elapsed_seconds=round(time.monotonic() - start_time, 3),
        )

    return False
