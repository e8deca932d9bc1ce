from redis_compare.config import load
from redis_compare.errors import CompareError, CompareErrorType, ConnectError, IffyKey
from redis_compare.failkeys import FailKeys, compare_from_file
from redis_compare.models import (
    Compare,
    InstanceType,
    RedisInstance,
    RedisKey,
    RedisKeyType,
    ScenarioType,
    SourceInstance,
)

__all__ = [
    "Compare",
    "CompareError",
    "CompareErrorType",
    "ConnectError",
    "FailKeys",
    "IffyKey",
    "InstanceType",
    "RedisInstance",
    "RedisKey",
    "RedisKeyType",
    "ScenarioType",
    "SourceInstance",
    "compare_from_file",
    "load",
]
