"""
Scenario description files.

A description mirrors ``Compare`` field for field::

    scenario: multisingle2single
    batch_size: 10
    ttl_diff: 1
    compare_pool: 4        # "threads" is accepted too
    reverse: false         # check target keys exist in a source
    forward: true          # false with reverse: true scans the target only
    result_dir: ./compare-results
    source:
      - instance:
          urls: [redis://10.0.0.1:6379]
          password: sourcepass
          instance_type: single
        dbmapper: {0: 0, 1: 3}
    target:
      urls: [redis://10.0.0.9:6379]
      password: targetpass
      instance_type: single

``sample(scenario)`` builds a ready-to-edit description for each scenario.
"""

from __future__ import annotations

from pathlib import Path

import yaml

from redis_compare.errors import ConfigError
from redis_compare.models import (
    Compare,
    InstanceType,
    RedisInstance,
    ScenarioType,
    SourceInstance,
)


def load(path: str) -> Compare:
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigError(f"scenario file not found: {path}")
    except yaml.YAMLError as e:
        raise ConfigError(f"failed to parse scenario file {path}: {e}")
    return Compare.from_dict(raw)


def dump(compare: Compare, path: str) -> Path:
    p = Path(path)
    if p.parent and not p.parent.exists():
        p.parent.mkdir(parents=True, exist_ok=True)
    with p.open("w", encoding="utf-8") as f:
        yaml.safe_dump(compare.to_dict(), f, sort_keys=False, allow_unicode=True)
    return p


def _single(url: str, password: str = "redispass") -> RedisInstance:
    return RedisInstance(urls=[url], password=password, instance_type=InstanceType.SINGLE)


def _cluster(urls: list[str], password: str = "redispass") -> RedisInstance:
    return RedisInstance(urls=urls, password=password, instance_type=InstanceType.CLUSTER)


CLUSTER_SOURCE_URLS = [f"redis://10.0.1.{i}:6379" for i in range(1, 4)]
CLUSTER_TARGET_URLS = [f"redis://10.0.2.{i}:6379" for i in range(1, 4)]


def sample_single2single() -> Compare:
    return Compare(
        source=[SourceInstance(_single("redis://10.0.0.1:6379"), {0: 0, 1: 1})],
        target=_single("redis://10.0.0.9:6379"),
        scenario=ScenarioType.SINGLE2SINGLE,
    )


def sample_single2cluster() -> Compare:
    return Compare(
        source=[SourceInstance(_single("redis://10.0.0.1:6379"))],
        target=_cluster(CLUSTER_TARGET_URLS),
        scenario=ScenarioType.SINGLE2CLUSTER,
    )


def sample_cluster2cluster() -> Compare:
    return Compare(
        source=[SourceInstance(_cluster(CLUSTER_SOURCE_URLS))],
        target=_cluster(CLUSTER_TARGET_URLS),
        scenario=ScenarioType.CLUSTER2CLUSTER,
    )


def sample_multisingle2single() -> Compare:
    return Compare(
        source=[
            SourceInstance(_single("redis://10.0.0.1:6379"), {0: 0, 1: 1}),
            SourceInstance(_single("redis://10.0.0.2:6379"), {0: 2, 1: 3}),
        ],
        target=_single("redis://10.0.0.9:6379"),
        scenario=ScenarioType.MULTISINGLE2SINGLE,
    )


def sample_multisingle2cluster() -> Compare:
    return Compare(
        source=[
            SourceInstance(_single("redis://10.0.0.1:6379")),
            SourceInstance(_single("redis://10.0.0.2:6379")),
        ],
        target=_cluster(CLUSTER_TARGET_URLS),
        scenario=ScenarioType.MULTISINGLE2CLUSTER,
    )


SAMPLES = {
    ScenarioType.SINGLE2SINGLE: sample_single2single,
    ScenarioType.SINGLE2CLUSTER: sample_single2cluster,
    ScenarioType.CLUSTER2CLUSTER: sample_cluster2cluster,
    ScenarioType.MULTISINGLE2SINGLE: sample_multisingle2single,
    ScenarioType.MULTISINGLE2CLUSTER: sample_multisingle2cluster,
}


def sample(scenario: ScenarioType | str) -> Compare:
    return SAMPLES[ScenarioType(scenario)]()
