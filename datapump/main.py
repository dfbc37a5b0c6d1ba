"""
Main loop of the loader.

Bootstraps once, then polls the control file forever:
check for a new control file, load it, clean up, wait, repeat.

Failure policy:
- crash (default): a failed batch stops the process with a non-zero exit
  code and leaves the staging directory in place for an operator; a
  supervisor is expected to restart the loader once it's been looked at
- continue: a failed batch is logged, its control file quarantined and
  the loop carries on with the next one

SIGTERM/SIGINT stop the loop between batches and interrupt the wait.
"""

import argparse
import os
import signal
import sys
import threading
import time
from typing import Any, Callable

import structlog

from datapump.batch import Batch
from datapump.config import DEFAULT_CONFIG_FILE, Config
from datapump.errors import BatchFailure
from datapump.loader import RunState, bootstrap
from datapump.metrics import MetricsClient
from datapump.pacing import pace

log = structlog.get_logger()


def run_iteration(
    state: RunState,
    metrics: MetricsClient,
    batch_factory: Callable[..., Batch] = Batch,
) -> bool:
    """
    Check for new data and load it.

    Returns:
        True if a batch was loaded, False if there was nothing to do.

    Raises:
        BatchFailure: If the control file check, the batch or its cleanup
            fails under the crash policy
    """
    try:
        control_file = state.control_source.next()
    except Exception as e:
        raise BatchFailure(f"control file check failed: {e}") from e

    if control_file is None:
        log.info("no_data_to_process")
        metrics.idle()
        return False

    log.info("new_data_to_process", control_file=str(control_file))

    batch = batch_factory(
        state.local,
        state.dfs,
        control_file,
        state.staging_directory,
        state.drop_staging_table,
        state.create_staging_table,
        state.insert_into,
    )
    try:
        batch.run()
    except BatchFailure:
        # Under the crash policy the staging directory is left for an operator
        if state.on_batch_failure == "continue":
            batch.cleanup()
        raise
    batch.cleanup()

    metrics.batch_loaded(len(control_file.data_files), batch.duration_seconds)
    return True


def run_loop(
    state: RunState,
    stop: threading.Event,
    metrics: MetricsClient,
    batch_factory: Callable[..., Batch] = Batch,
    pace_fn: Callable[..., bool] = pace,
) -> None:
    """
    Poll for new data until stop is set.

    Every iteration is followed by pace_fn, whether or not there was data.
    """
    while not stop.is_set():
        start_time = time.monotonic()

        try:
            run_iteration(state, metrics, batch_factory)
        except BatchFailure as e:
            metrics.batch_failed(state.on_batch_failure)
            metrics.flush()

            if state.on_batch_failure == "crash":
                log.error("batch_failed", error=str(e), control_file=e.control_file, policy="crash")
                raise

            log.exception("batch_failed", error=str(e), control_file=e.control_file, policy="continue")

        metrics.flush()

        if pace_fn(
            start_time,
            state.seconds_between_batches,
            state.max_seconds_between_batches,
            stop,
        ):
            break

    log.info("loader_stopped")


def configure_logging() -> None:
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
    )


def parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="datapump",
        description="Load replicated change data into the target table.",
    )
    parser.add_argument(
        "config",
        nargs="?",
        default=os.environ.get("DATAPUMP_CONFIG", DEFAULT_CONFIG_FILE),
        help=f"Configuration file (default: {DEFAULT_CONFIG_FILE})",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Entry point. Returns the process exit code."""
    args = parse_args(argv)
    log.info("loader_starting", config_file=args.config)

    stop = threading.Event()

    def _handle_shutdown(signum: int, frame: Any) -> None:
        log.info("shutdown_signal_received", signal=signum)
        stop.set()

    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)

    try:
        config = Config.from_file(args.config)
        state = bootstrap(config)
    except Exception as e:
        log.exception("loader_startup_failed", error=str(e), error_type=type(e).__name__)
        return 1

    metrics = MetricsClient(config.metrics, table=state.target_table)
    log.info(
        "loader_started",
        staging_directory=state.staging_directory,
        seconds_between_batches=state.seconds_between_batches,
        on_batch_failure=state.on_batch_failure,
    )

    try:
        run_loop(state, stop, metrics)
    except Exception as e:
        log.exception("loader_failed", error=str(e), error_type=type(e).__name__)
        return 1
    finally:
        state.engine.close()

    return 0


def cli() -> None:
    configure_logging()
    sys.exit(main())


if __name__ == "__main__":
    cli()
