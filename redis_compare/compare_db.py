from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Iterable, Iterator

from redis_compare.comparer import WIRE_ERRORS, Comparer
from redis_compare.errors import ConnectError
from redis_compare.failkeys import FailKeys, FailureRecorder
from redis_compare.models import InstanceType, InstanceWithDB
from redis_compare.redis_utils import (
    RedisClient,
    RedisConnection,
    open_client,
    resolve_key_types,
)

logger = logging.getLogger(__name__)


def iter_batches(keys: Iterable[str], size: int) -> Iterator[list[str]]:
    """Group keys into lists of ``size``; the trailing partial list is yielded too."""
    batch: list[str] = []
    for key in keys:
        batch.append(key)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch


class BoundedPool:
    """ThreadPoolExecutor whose submit() blocks while every worker is busy."""

    def __init__(self, workers: int):
        # raises ValueError for workers <= 0
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="compare")
        self._slots = threading.BoundedSemaphore(workers)
        self._futures: list[Future] = []

    def submit(self, fn: Callable, *args) -> Future:
        self._slots.acquire()
        try:
            fut = self._executor.submit(fn, *args)
        except BaseException:
            self._slots.release()
            raise
        fut.add_done_callback(lambda _: self._slots.release())
        self._futures.append(fut)
        return fut

    def results(self) -> list:
        out = []
        for fut in self._futures:
            exc = fut.exception()
            if exc is not None:
                logger.error("compare task failed: %r", exc)
                continue
            res = fut.result()
            if res is not None:
                out.append(res)
        return out

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)

    def __enter__(self) -> BoundedPool:
        return self

    def __exit__(self, *exc) -> None:
        self.shutdown()


def select_if_single(conn: RedisConnection, db: int) -> None:
    if conn.instance_type is InstanceType.SINGLE:
        conn.select_db(db)


def dispatch(
    scan_conn: RedisConnection,
    batch_size: int,
    scan_count: int,
    pool: BoundedPool,
    make_task: Callable[[list[str]], Callable[[], FailKeys | None]],
) -> int:
    """Scan on the calling thread and hand each batch to the pool.

    ``make_task`` obtains the task's own connections and may raise
    ConnectError, which ends the loop; keys not yet batched are not compared.
    Returns the number of keys dispatched.
    """
    dispatched = 0
    try:
        for batch in iter_batches(scan_conn.scan(scan_count), batch_size):
            try:
                task = make_task(batch)
            except ConnectError as e:
                logger.error("dispatch stopped after %d keys: %s", dispatched, e)
                break
            pool.submit(task)
            dispatched += len(batch)
            logger.debug("submitted batch of %d keys (%d total)", len(batch), dispatched)
    except WIRE_ERRORS as e:
        logger.error("scan stopped after %d keys: %s", dispatched, e)
    return dispatched


@dataclass
class CompareTask:
    """One batch with its own pair of connections."""

    keys: list[str]
    sconn: RedisConnection
    tconn: RedisConnection
    source: InstanceWithDB
    target: InstanceWithDB
    ttl_diff: int
    batch: int
    recorder: FailureRecorder

    def run(self) -> FailKeys | None:
        try:
            self.sconn.select_db(self.source.db)
            select_if_single(self.tconn, self.target.db)
            rediskeys = resolve_key_types(self.keys, self.sconn.redis)
            comparer = Comparer(self.sconn.redis, self.tconn.redis, self.ttl_diff, self.batch)
            iffy = comparer.compare_rediskeys(rediskeys)
        except WIRE_ERRORS as e:
            logger.error("batch of %d keys from %s aborted: %s", len(self.keys), self.source.describe(), e)
            return None
        finally:
            self.sconn.close()
            self.tconn.close()

        if not iffy:
            return None
        fk = FailKeys(
            source=[self.source],
            target=self.target,
            keys=iffy,
            reverse=False,
            ttl_diff=self.ttl_diff,
            batch=self.batch,
        )
        self.recorder.record(fk)
        return fk


def connection_pair(s_client: RedisClient, t_client: RedisClient) -> tuple[RedisConnection, RedisConnection]:
    sconn = s_client.connection()
    try:
        tconn = t_client.connection()
    except Exception:
        sconn.close()
        raise
    return sconn, tconn


@dataclass
class CompareDB:
    """Forward check of one source db against one target db."""

    source: InstanceWithDB
    target: InstanceWithDB
    batch_size: int = 10
    ttl_diff: int = 1
    compare_pool: int = 2
    scan_count: int = 1000
    recorder: FailureRecorder | None = None

    def compare(self) -> list[FailKeys]:
        if self.source.instance.is_cluster:
            logger.error("source %s is a cluster instance, scan needs a single instance", self.source.describe())
            return []

        try:
            s_client = open_client(self.source.instance)
            t_client = open_client(self.target.instance)
        except ConnectError as e:
            logger.error("%s", e)
            return []

        try:
            pool = BoundedPool(self.compare_pool)
        except ValueError as e:
            logger.error("build compare pool failed: %s", e)
            return []

        recorder = self.recorder or FailureRecorder()
        logger.info("compare %s -> %s", self.source.describe(), self.target.describe())

        def make_task(batch: list[str]):
            sconn, tconn = connection_pair(s_client, t_client)
            return CompareTask(
                keys=batch,
                sconn=sconn,
                tconn=tconn,
                source=self.source,
                target=self.target,
                ttl_diff=self.ttl_diff,
                batch=self.batch_size,
                recorder=recorder,
            ).run

        with pool:
            try:
                scan_conn = s_client.connection()
            except ConnectError as e:
                logger.error("%s", e)
                return []
            with scan_conn:
                try:
                    scan_conn.select_db(self.source.db)
                except WIRE_ERRORS as e:
                    logger.error("select db %d on %s failed: %s", self.source.db, self.source.describe(), e)
                    return []
                total = dispatch(scan_conn, self.batch_size, self.scan_count, pool, make_task)

        results = pool.results()
        logger.info(
            "compare %s -> %s done: %d keys, %d batches with iffy keys",
            self.source.describe(),
            self.target.describe(),
            total,
            len(results),
        )
        return results
