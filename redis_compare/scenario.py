from __future__ import annotations

import logging
from collections import defaultdict
from typing import Callable, Union

from redis_compare.compare_db import CompareDB
from redis_compare.errors import ConfigError, ConnectError
from redis_compare.failkeys import FailKeys, FailureRecorder
from redis_compare.models import (
    Compare,
    InstanceType,
    InstanceWithDB,
    RedisInstance,
    ScenarioType,
)
from redis_compare.redis_utils import open_client
from redis_compare.reverse import CompareDBReverse

logger = logging.getLogger(__name__)

Job = Union[CompareDB, CompareDBReverse]


def _require(cond: bool, msg: str) -> None:
    if not cond:
        raise ConfigError(msg)


def _check_shape(compare: Compare, single_source: bool, source_type: InstanceType, target_type: InstanceType) -> None:
    name = compare.scenario.value
    _require(compare.forward or compare.reverse, f"{name}: forward and reverse are both off")
    if single_source:
        _require(len(compare.source) == 1, f"{name} takes exactly one source, got {len(compare.source)}")
    for src in compare.source:
        _require(
            src.instance.instance_type is source_type,
            f"{name} needs {source_type.value} sources, got {src.instance.describe()}",
        )
    _require(
        compare.target.instance_type is target_type,
        f"{name} needs a {target_type.value} target, got {compare.target.describe()}",
    )


def _forward(compare: Compare, source: InstanceWithDB, target: InstanceWithDB, recorder: FailureRecorder) -> CompareDB:
    return CompareDB(
        source=source,
        target=target,
        batch_size=compare.batch_size,
        ttl_diff=compare.ttl_diff,
        compare_pool=compare.compare_pool,
        scan_count=compare.scan_count,
        recorder=recorder,
    )


def _reverse(compare: Compare, sources: list[InstanceWithDB], target: InstanceWithDB, recorder: FailureRecorder) -> CompareDBReverse:
    return CompareDBReverse(
        sources=sources,
        target=target,
        batch_size=compare.batch_size,
        compare_pool=compare.compare_pool,
        scan_count=compare.scan_count,
        recorder=recorder,
    )


def plan_single_target(compare: Compare, recorder: FailureRecorder) -> list[Job]:
    """Sources are remapped db by db through their dbmapper."""
    jobs: list[Job] = []
    by_target: dict[int, list[InstanceWithDB]] = defaultdict(list)
    for src in compare.source:
        if not src.dbmapper:
            logger.error("source %s has no dbmapper configured, skipped", src.instance.describe())
            continue
        for s_db, t_db in sorted(src.dbmapper.items()):
            source = InstanceWithDB(src.instance, s_db)
            if compare.forward:
                jobs.append(_forward(compare, source, InstanceWithDB(compare.target, t_db), recorder))
            by_target[t_db].append(source)

    _require(bool(by_target), f"{compare.scenario.value}: no source has a dbmapper")
    if compare.reverse:
        for t_db, sources in sorted(by_target.items()):
            jobs.append(_reverse(compare, sources, InstanceWithDB(compare.target, t_db), recorder))
    return jobs


def plan_cluster_target(compare: Compare, recorder: FailureRecorder, scan_sources: list[RedisInstance]) -> list[Job]:
    """Clusters only have db 0; each scan source is compared from its db 0."""
    for src in compare.source:
        if src.dbmapper:
            logger.warning("dbmapper of %s ignored, cluster target has db 0 only", src.instance.describe())

    jobs: list[Job] = []
    if compare.forward:
        target = InstanceWithDB(compare.target, 0)
        jobs.extend(_forward(compare, InstanceWithDB(instance, 0), target, recorder) for instance in scan_sources)
    if compare.reverse:
        sources = [InstanceWithDB(src.instance, 0) for src in compare.source]
        for primary in open_client(compare.target).primaries():
            jobs.append(_reverse(compare, sources, InstanceWithDB(primary, 0), recorder))
    return jobs


def single2single(compare: Compare, recorder: FailureRecorder) -> list[Job]:
    _check_shape(compare, True, InstanceType.SINGLE, InstanceType.SINGLE)
    return plan_single_target(compare, recorder)


def multisingle2single(compare: Compare, recorder: FailureRecorder) -> list[Job]:
    _check_shape(compare, False, InstanceType.SINGLE, InstanceType.SINGLE)
    return plan_single_target(compare, recorder)


def single2cluster(compare: Compare, recorder: FailureRecorder) -> list[Job]:
    _check_shape(compare, True, InstanceType.SINGLE, InstanceType.CLUSTER)
    return plan_cluster_target(compare, recorder, [compare.source[0].instance])


def multisingle2cluster(compare: Compare, recorder: FailureRecorder) -> list[Job]:
    _check_shape(compare, False, InstanceType.SINGLE, InstanceType.CLUSTER)
    return plan_cluster_target(compare, recorder, [s.instance for s in compare.source])


def cluster2cluster(compare: Compare, recorder: FailureRecorder) -> list[Job]:
    _check_shape(compare, True, InstanceType.CLUSTER, InstanceType.CLUSTER)
    primaries: list[RedisInstance] = []
    if compare.forward:
        # the cluster is never scanned as one keyspace: one scan per primary
        primaries = open_client(compare.source[0].instance).primaries()
        logger.info("source cluster has %d primaries, scanning each", len(primaries))
    return plan_cluster_target(compare, recorder, primaries)


SCENARIOS: dict[ScenarioType, Callable[[Compare, FailureRecorder], list[Job]]] = {
    ScenarioType.SINGLE2SINGLE: single2single,
    ScenarioType.SINGLE2CLUSTER: single2cluster,
    ScenarioType.CLUSTER2CLUSTER: cluster2cluster,
    ScenarioType.MULTISINGLE2SINGLE: multisingle2single,
    ScenarioType.MULTISINGLE2CLUSTER: multisingle2cluster,
}


def preflight(compare: Compare) -> None:
    """Build every client and handshake once so bad urls or auth abort before any compare."""
    instances = [s.instance for s in compare.source] + [compare.target]
    for instance in instances:
        with open_client(instance).connection():
            pass


def run_scenario(compare: Compare, recorder: FailureRecorder | None = None) -> list[FailKeys]:
    try:
        recorder = recorder or FailureRecorder(compare.result_dir, compare.s3_uri)
    except ValueError as e:
        logger.error("scenario %s aborted: %s", compare.scenario.value, e)
        return []
    logger.info("run %s: scenario %s", recorder.run_id, compare.scenario.value)
    try:
        jobs = SCENARIOS[compare.scenario](compare, recorder)
        preflight(compare)
    except (ConfigError, ConnectError) as e:
        logger.error("scenario %s aborted: %s", compare.scenario.value, e)
        return []

    results: list[FailKeys] = []
    for job in jobs:
        results.extend(job.compare())

    iffy = sum(len(fk.keys) for fk in results)
    if iffy:
        logger.warning("run %s finished: %d iffy keys in %d batches", recorder.run_id, iffy, len(results))
    else:
        logger.info("run %s finished: no iffy keys", recorder.run_id)
    return results
