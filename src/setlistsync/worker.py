from __future__ import annotations

import argparse
import dataclasses
import logging
import os
import signal
import threading

from .config import ConfigError, load_config
from .engine import SyncEngine
from .storage import init_db
from .utils import configure_logging, log_event


def _setup_logging() -> logging.Logger:
    return configure_logging("setlistsync.worker")


def run_once(
    engine: SyncEngine,
    logger: logging.Logger,
    stop_event: threading.Event | None = None,
) -> int:
    """Run one freshness pass and work the queue until it is empty.

    Priority delays are skipped so every scheduled job gets its first attempt;
    retries still wait out their backoff. Jobs left waiting when the run is
    stopped are logged and make the run fail.
    """
    stop_event = stop_event or threading.Event()
    report = engine.run_pass()
    processed = 0
    poll_seconds = engine.config.executor.poll_seconds
    while not stop_event.is_set() and not engine.queue.closed:
        processed += engine.drain(include_delayed=True)
        wait_for = engine.queue.next_ready_in()
        if wait_for is None:
            break
        engine.queue.wait_for_work(min(wait_for, poll_seconds), stop_event)
    waiting = engine.queue.waiting_jobs()
    if waiting:
        log_event(
            logger,
            logging.WARNING,
            "worker_jobs_abandoned",
            waiting=len(waiting),
            jobs=",".join(f"{job.sync_type}:{job.entity_id}" for job in waiting[:10]),
        )
    log_event(
        logger,
        logging.INFO,
        "worker_pass_completed",
        scheduled=report.scheduled_syncs,
        processed=processed,
        skipped=report.skipped,
        errors=len(report.errors),
        abandoned=len(waiting),
    )
    if waiting:
        return 1
    return 1 if report.errors and not report.skipped else 0


def run_loop(
    engine: SyncEngine,
    logger: logging.Logger,
    pass_interval_seconds: float,
    stop_event: threading.Event,
) -> int:
    while not stop_event.is_set():
        report = engine.run_pass()
        log_event(
            logger,
            logging.INFO,
            "worker_pass_scheduled",
            scheduled=report.scheduled_syncs,
            skipped=report.skipped,
            errors=len(report.errors),
            queue_waiting=engine.queue.stats()["waiting"],
        )
        stop_event.wait(pass_interval_seconds)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="setlistsync-worker")
    parser.add_argument("--once", action="store_true", help="Run one freshness pass, drain the queue and exit")
    parser.add_argument("--config", default=None, help="Path to a YAML config file")
    parser.add_argument(
        "--concurrency",
        type=int,
        default=int(os.environ.get("SS_WORKER_CONCURRENCY", "0") or "0"),
        help="Override executor concurrency",
    )
    parser.add_argument(
        "--sleep",
        type=float,
        default=None,
        help="Override seconds between queue polls",
    )
    parser.add_argument(
        "--pass-interval",
        type=float,
        default=None,
        help="Minutes between freshness passes",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = _setup_logging()
    try:
        config = load_config(args.config)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    executor_overrides: dict[str, object] = {}
    if args.concurrency and args.concurrency > 0:
        executor_overrides["concurrency"] = args.concurrency
    if args.sleep is not None and args.sleep > 0:
        executor_overrides["poll_seconds"] = float(args.sleep)
    if executor_overrides:
        config = dataclasses.replace(
            config,
            executor=dataclasses.replace(config.executor, **executor_overrides),
        )

    init_db().close()
    engine = SyncEngine(config)
    engine.init(workers=not args.once)
    try:
        stop_event = threading.Event()
        _install_signal_handlers(stop_event, logger)
        if args.once:
            return run_once(engine, logger, stop_event)
        interval_minutes = args.pass_interval or config.worker.pass_interval_minutes
        return run_loop(engine, logger, interval_minutes * 60.0, stop_event)
    finally:
        engine.shutdown()


def _install_signal_handlers(stop_event: threading.Event, logger: logging.Logger) -> None:
    def _handle(signum, _frame) -> None:
        log_event(logger, logging.INFO, "worker_stopping", signal=signum)
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            signal.signal(sig, _handle)
        except ValueError:
            # not the main thread
            return


if __name__ == "__main__":
    raise SystemExit(main())
