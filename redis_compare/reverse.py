from __future__ import annotations

import logging
from dataclasses import dataclass

from redis_compare.comparer import WIRE_ERRORS
from redis_compare.compare_db import BoundedPool, dispatch, select_if_single
from redis_compare.errors import CompareError, CompareErrorType, ConnectError, IffyKey
from redis_compare.failkeys import FailKeys, FailureRecorder
from redis_compare.models import InstanceWithDB, RedisKey
from redis_compare.redis_utils import RedisConnection, open_client, split_key_types

logger = logging.getLogger(__name__)


def exists_in_any(name: str, sources: list) -> bool:
    """True as soon as one source has the key.

    A wire error on one source only matters when no other source has the key.
    """
    failure = None
    for r in sources:
        try:
            if r.exists(name):
                return True
        except WIRE_ERRORS as e:
            failure = e
    if failure is not None:
        raise failure
    return False


def check_reverse(keys: list[RedisKey], sources: list) -> list[IffyKey]:
    iffy: list[IffyKey] = []
    for key in keys:
        try:
            if not exists_in_any(key.name, sources):
                iffy.append(
                    IffyKey(key, CompareError(CompareErrorType.EXISTS_ERR, "key not in any db"))
                )
        except WIRE_ERRORS as e:
            logger.error("reverse check %s inconclusive: %s", key.name, e)
    return iffy


def check_reverse_untyped(keys: list[tuple[str, str]], sources: list) -> list[str]:
    """Existence-only check of (name, type) pairs whose type is never compared.

    Such keys have no artifact form: missing ones are logged and returned.
    """
    missing: list[str] = []
    for name, t in keys:
        try:
            if not exists_in_any(name, sources):
                logger.warning("target key %s (%s) not in any db, not recorded: type is not compared", name, t)
                missing.append(name)
        except WIRE_ERRORS as e:
            logger.error("reverse check %s inconclusive: %s", name, e)
    return missing


@dataclass
class ReverseTask:
    keys: list[str]
    tconn: RedisConnection
    sconns: list[RedisConnection]
    sources: list[InstanceWithDB]
    target: InstanceWithDB
    recorder: FailureRecorder

    def run(self) -> FailKeys | None:
        try:
            self.tconn.select_db(self.target.db)
            for conn, src in zip(self.sconns, self.sources):
                select_if_single(conn, src.db)
            rediskeys, others = split_key_types(self.keys, self.tconn.redis)
            sources = [c.redis for c in self.sconns]
            iffy = check_reverse(rediskeys, sources)
            check_reverse_untyped(others, sources)
        except WIRE_ERRORS as e:
            logger.error("reverse batch of %d keys from %s aborted: %s", len(self.keys), self.target.describe(), e)
            return None
        finally:
            self.tconn.close()
            for conn in self.sconns:
                conn.close()

        if not iffy:
            return None
        fk = FailKeys(source=list(self.sources), target=self.target, keys=iffy, reverse=True)
        self.recorder.record(fk)
        return fk


@dataclass
class CompareDBReverse:
    """Every key of the target db must exist in at least one source db."""

    sources: list[InstanceWithDB]
    target: InstanceWithDB
    batch_size: int = 10
    compare_pool: int = 2
    scan_count: int = 1000
    recorder: FailureRecorder | None = None

    def compare(self) -> list[FailKeys]:
        if self.target.instance.is_cluster:
            logger.error("target %s is a cluster instance, scan needs a single instance", self.target.describe())
            return []
        if not self.sources:
            logger.error("reverse compare of %s has no sources", self.target.describe())
            return []

        try:
            t_client = open_client(self.target.instance)
            s_clients = [open_client(s.instance) for s in self.sources]
        except ConnectError as e:
            logger.error("%s", e)
            return []

        try:
            pool = BoundedPool(self.compare_pool)
        except ValueError as e:
            logger.error("build compare pool failed: %s", e)
            return []

        recorder = self.recorder or FailureRecorder()
        logger.info(
            "reverse compare %s -> [%s]",
            self.target.describe(),
            ", ".join(s.describe() for s in self.sources),
        )

        def make_task(batch: list[str]):
            tconn = t_client.connection()
            sconns = []
            try:
                for c in s_clients:
                    sconns.append(c.connection())
            except Exception:
                tconn.close()
                for conn in sconns:
                    conn.close()
                raise
            return ReverseTask(
                keys=batch,
                tconn=tconn,
                sconns=sconns,
                sources=self.sources,
                target=self.target,
                recorder=recorder,
            ).run

        with pool:
            try:
                scan_conn = t_client.connection()
            except ConnectError as e:
                logger.error("%s", e)
                return []
            with scan_conn:
                try:
                    scan_conn.select_db(self.target.db)
                except WIRE_ERRORS as e:
                    logger.error("select db %d on %s failed: %s", self.target.db, self.target.describe(), e)
                    return []
                total = dispatch(scan_conn, self.batch_size, self.scan_count, pool, make_task)

        results = pool.results()
        logger.info(
            "reverse compare %s done: %d keys, %d batches with iffy keys",
            self.target.describe(),
            total,
            len(results),
        )
        return results
