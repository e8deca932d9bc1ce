from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from redis_compare.errors import ConfigError


class InstanceType(str, Enum):
    SINGLE = "single"
    CLUSTER = "cluster"


class ScenarioType(str, Enum):
    SINGLE2SINGLE = "single2single"
    SINGLE2CLUSTER = "single2cluster"
    CLUSTER2CLUSTER = "cluster2cluster"
    MULTISINGLE2SINGLE = "multisingle2single"
    MULTISINGLE2CLUSTER = "multisingle2cluster"


class RedisKeyType(str, Enum):
    STRING = "string"
    LIST = "list"
    SET = "set"
    ZSET = "zset"
    HASH = "hash"

    @classmethod
    def parse(cls, value: str) -> RedisKeyType | None:
        """Map a TYPE reply to a comparable type, None for anything else."""
        try:
            return cls(value)
        except ValueError:
            return None


def _enum_value(enum_cls, value, what: str):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(e.value for e in enum_cls)
        raise ConfigError(f"invalid {what} {value!r} (expected one of: {allowed})")


@dataclass(frozen=True)
class RedisKey:
    name: str
    key_type: RedisKeyType

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "key_type": self.key_type.value}

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> RedisKey:
        return cls(name=d["name"], key_type=RedisKeyType(d["key_type"]))


@dataclass(frozen=True)
class RedisInstance:
    urls: list[str]
    password: str | None = None
    instance_type: InstanceType = InstanceType.SINGLE

    @property
    def is_cluster(self) -> bool:
        return self.instance_type is InstanceType.CLUSTER

    def describe(self) -> str:
        return f"{self.instance_type.value}[{','.join(self.urls)}]"

    def to_dict(self) -> dict[str, Any]:
        return {
            "urls": list(self.urls),
            "password": self.password,
            "instance_type": self.instance_type.value,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> RedisInstance:
        if not isinstance(d, dict):
            raise ConfigError(f"redis instance must be a mapping, got {d!r}")
        urls = d.get("urls")
        if isinstance(urls, str):
            urls = [urls]
        if not urls:
            raise ConfigError("redis instance requires at least one url")
        password = d.get("password")
        if password is not None and not isinstance(password, str):
            password = str(password)
        return cls(
            urls=[str(u) for u in urls],
            password=password or None,
            instance_type=_enum_value(
                InstanceType, d.get("instance_type", "single"), "instance_type"
            ),
        )


@dataclass(frozen=True)
class InstanceWithDB:
    """One logical database of one deployment."""

    instance: RedisInstance
    db: int = 0

    def describe(self) -> str:
        return f"{self.instance.describe()}/db{self.db}"

    def to_dict(self) -> dict[str, Any]:
        return {"instance": self.instance.to_dict(), "db": self.db}

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> InstanceWithDB:
        return cls(instance=RedisInstance.from_dict(d["instance"]), db=int(d["db"]))


@dataclass(frozen=True)
class SourceInstance:
    instance: RedisInstance
    dbmapper: dict[int, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "instance": self.instance.to_dict(),
            "dbmapper": {int(k): int(v) for k, v in self.dbmapper.items()},
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> SourceInstance:
        if not isinstance(d, dict) or "instance" not in d:
            raise ConfigError(f"source entry requires an 'instance' mapping: {d!r}")
        raw = d.get("dbmapper") or {}
        if not isinstance(raw, dict):
            raise ConfigError(f"dbmapper must be a mapping of db -> db: {raw!r}")
        try:
            dbmapper = {int(k): int(v) for k, v in raw.items()}
        except (TypeError, ValueError):
            raise ConfigError(f"dbmapper entries must be integers: {raw!r}")
        return cls(instance=RedisInstance.from_dict(d["instance"]), dbmapper=dbmapper)


DEFAULT_BATCH_SIZE = 10
DEFAULT_TTL_DIFF = 1
DEFAULT_COMPARE_POOL = 2
DEFAULT_SCAN_COUNT = 1000


@dataclass(frozen=True)
class Compare:
    source: list[SourceInstance]
    target: RedisInstance
    scenario: ScenarioType
    batch_size: int = DEFAULT_BATCH_SIZE
    ttl_diff: int = DEFAULT_TTL_DIFF
    compare_pool: int = DEFAULT_COMPARE_POOL
    scan_count: int = DEFAULT_SCAN_COUNT
    reverse: bool = False
    # false with reverse set: only the target is scanned
    forward: bool = True
    result_dir: str | None = None
    s3_uri: str | None = None

    def exec(self):
        from redis_compare.scenario import run_scenario

        return run_scenario(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": [s.to_dict() for s in self.source],
            "target": self.target.to_dict(),
            "scenario": self.scenario.value,
            "batch_size": self.batch_size,
            "ttl_diff": self.ttl_diff,
            "compare_pool": self.compare_pool,
            "scan_count": self.scan_count,
            "reverse": self.reverse,
            "forward": self.forward,
            "result_dir": self.result_dir,
            "s3_uri": self.s3_uri,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Compare:
        if not isinstance(d, dict):
            raise ConfigError("scenario description must be a mapping")
        for required in ("source", "target", "scenario"):
            if required not in d:
                raise ConfigError(f"scenario description missing required key: {required!r}")
        sources = d["source"]
        if isinstance(sources, dict):
            sources = [sources]
        if not sources:
            raise ConfigError("scenario description requires at least one source")

        pool = d.get("compare_pool", d.get("threads", DEFAULT_COMPARE_POOL))
        try:
            compare = cls(
                source=[SourceInstance.from_dict(s) for s in sources],
                target=RedisInstance.from_dict(d["target"]),
                scenario=_enum_value(ScenarioType, d["scenario"], "scenario"),
                batch_size=int(d.get("batch_size", DEFAULT_BATCH_SIZE)),
                ttl_diff=int(d.get("ttl_diff", DEFAULT_TTL_DIFF)),
                compare_pool=int(pool),
                scan_count=int(d.get("scan_count", DEFAULT_SCAN_COUNT)),
                reverse=bool(d.get("reverse", False)),
                forward=bool(d.get("forward", True)),
                result_dir=d.get("result_dir") or None,
                s3_uri=d.get("s3_uri") or None,
            )
        except (TypeError, ValueError) as e:
            if isinstance(e, ConfigError):
                raise
            raise ConfigError(f"invalid numeric option: {e}")
        if compare.batch_size <= 0:
            raise ConfigError("batch_size must be positive")
        if compare.ttl_diff < 0:
            raise ConfigError("ttl_diff must not be negative")
        if not (compare.forward or compare.reverse):
            raise ConfigError("nothing to compare: forward and reverse are both off")
        return compare
