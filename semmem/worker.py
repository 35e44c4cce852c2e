"""
Background worker process: relationship descriptions and action-cache pruning.

Run with `python -m semmem.worker`. Several worker processes may run at once;
edge pairs are claimed under a lease.
"""

import argparse
import signal
import threading
import time
from typing import List, Optional

from .bootstrap import build_services
from .utils.config import config
from .utils.health_check import check_health
from .utils.logging_config import get_logger

logger = get_logger(__name__)


class CachePruner:
    """Deletes stale action-cache entries on a fixed interval."""

    def __init__(self, action_cache, interval_hours: float):
        self.action_cache = action_cache
        self.interval_seconds = interval_hours * 3600
        self._stop = threading.Event()

    def run_forever(self) -> None:
        while not self._stop.is_set():
            try:
                self.action_cache.prune_stale()
            except Exception as e:
                logger.error(f'Action cache prune failed: {e}')
            self._stop.wait(self.interval_seconds)

    def stop(self) -> None:
        self._stop.set()


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description='SemMem background worker')
    parser.add_argument('--threads', type=int, default=1, help='description worker threads')
    parser.add_argument('--once', action='store_true', help='process one batch per thread and exit')
    parser.add_argument('--backfill-user', help='write missing reverse edges for this user, then exit')
    parser.add_argument('--regenerate-user', help='rerun relationship discovery for every node of this user, then exit')
    args = parser.parse_args(argv)

    services = build_services()
    if not check_health(services.clients):
        logger.warning('Starting with unhealthy dependencies, work will be retried on later passes')

    if args.backfill_user:
        repaired = services.graph.backfill_symmetry(args.backfill_user)
        logger.info(f'Backfill wrote {repaired} reverse edges')
        return 0

    if args.regenerate_user:
        totals = services.graph.regenerate(args.regenerate_user)
        return 1 if totals['failed'] else 0

    workers = [services.description_worker() for _ in range(max(1, args.threads))]

    if args.once:
        for worker in workers:
            worker.process_batch()
        services.action_cache.prune_stale()
        return 0

    pruner = CachePruner(services.action_cache, config.action_cache.prune_interval_hours)
    runners = workers + [pruner]
    threads = [threading.Thread(target=runner.run_forever, name=f'semmem-worker-{i}', daemon=True) for i, runner in enumerate(runners)]

    def _shutdown(signum, frame):
        logger.info(f'Received signal {signum}, stopping workers')
        for runner in runners:
            runner.stop()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    for thread in threads:
        thread.start()
    while any(thread.is_alive() for thread in threads):
        time.sleep(1.0)

    for worker in workers:
        logger.info(f'Worker stats: {worker.stats}')
    services.tasks.shutdown()
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
