from __future__ import annotations

import logging
from typing import Iterable, Iterator

from redis import Redis
from redis.cluster import ClusterNode, RedisCluster
from redis.connection import ConnectionPool, parse_url
from redis.exceptions import RedisClusterException, RedisError

from redis_compare.errors import ConnectError, UnsupportedOperation
from redis_compare.models import InstanceType, RedisInstance, RedisKey, RedisKeyType

logger = logging.getLogger(__name__)

# Key names and values that are not valid UTF-8 still round-trip as str.
CLIENT_OPTIONS = {
    "decode_responses": True,
    "encoding_errors": "surrogateescape",
    "socket_connect_timeout": 5,
    "socket_timeout": 5,
}


def parse_nodes(urls: Iterable[str]) -> list[tuple[str, int]]:
    nodes: list[tuple[str, int]] = []
    for url in urls:
        opts = parse_url(url)
        host = opts.get("host")
        if not host:
            raise ValueError(f"cluster seed url needs a host: {url}")
        nodes.append((host, int(opts.get("port", 6379))))
    return nodes


class RedisConnection:
    """One live connection, either to a single node or to a whole cluster.

    ``redis`` exposes the redis-py command API. Operations that only make
    sense on one topology raise ``UnsupportedOperation`` on the other.
    """

    def __init__(self, instance_type: InstanceType, redis, pool: ConnectionPool | None = None):
        self.instance_type = instance_type
        self.redis = redis
        self._pool = pool

    @property
    def is_cluster(self) -> bool:
        return self.instance_type is InstanceType.CLUSTER

    def run(self, *args):
        return self.redis.execute_command(*args)

    def select_db(self, db: int) -> None:
        if self.is_cluster:
            raise UnsupportedOperation("SELECT is not supported on a cluster connection")
        self.run("SELECT", db)

    def scan(self, count: int = 1000) -> Iterator[str]:
        if self.is_cluster:
            raise UnsupportedOperation(
                "SCAN over a cluster connection sees one shard only; scan each primary instead"
            )
        return scan_keys(self.redis, count)

    def close(self) -> None:
        try:
            self.redis.close()
        finally:
            if self._pool is not None:
                self._pool.disconnect()

    def __enter__(self) -> RedisConnection:
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class RedisClient:
    """Validated, connection-less handle on one deployment.

    Safe to share between threads: it only holds parsed options and hands out
    a fresh ``RedisConnection`` per ``connection()`` call.
    """

    def __init__(self, instance: RedisInstance, nodes: list[tuple[str, int]] | None = None):
        self.instance = instance
        self._nodes = nodes or []

    @property
    def instance_type(self) -> InstanceType:
        return self.instance.instance_type

    def _options(self) -> dict:
        opts = dict(CLIENT_OPTIONS)
        if self.instance.password:
            opts["password"] = self.instance.password
        return opts

    def connection(self) -> RedisConnection:
        if self.instance_type is InstanceType.SINGLE:
            return self._single_connection()
        return self._cluster_connection()

    def _single_connection(self) -> RedisConnection:
        pool = ConnectionPool.from_url(self.instance.urls[0], **self._options())
        r = None
        try:
            # single_connection_client connects and authenticates in the constructor
            r = Redis(connection_pool=pool, single_connection_client=True)
            r.ping()
        except RedisError as e:
            if r is not None:
                r.close()
            pool.disconnect()
            raise ConnectError(f"connect {self.instance.urls[0]} failed: {e}") from e
        return RedisConnection(InstanceType.SINGLE, r, pool)

    def _cluster_connection(self) -> RedisConnection:
        startup_nodes = [ClusterNode(host=h, port=p) for h, p in self._nodes]
        try:
            rc = RedisCluster(startup_nodes=startup_nodes, **self._options())
            rc.ping()
        except (RedisClusterException, RedisError) as e:
            raise ConnectError(f"connect cluster {self._nodes} failed: {e}") from e
        return RedisConnection(InstanceType.CLUSTER, rc)

    def primaries(self) -> list[RedisInstance]:
        """Single-node view of every primary, used to scan a cluster shard by shard."""
        if self.instance_type is InstanceType.SINGLE:
            return [self.instance]
        with self.connection() as conn:
            nodes = conn.redis.get_primaries()
        return [
            RedisInstance(
                urls=[f"redis://{node.host}:{node.port}"],
                password=self.instance.password,
                instance_type=InstanceType.SINGLE,
            )
            for node in nodes
        ]


def open_client(instance: RedisInstance) -> RedisClient:
    """Validate URLs and credentials and build a client. No network I/O."""
    if not instance.urls:
        raise ConnectError("redis instance has no urls")
    if instance.password is not None and not isinstance(instance.password, str):
        raise ConnectError("redis password must be a string")
    try:
        if instance.instance_type is InstanceType.SINGLE:
            if len(instance.urls) > 1:
                logger.warning(
                    "single instance lists %d urls, only %s is used",
                    len(instance.urls),
                    instance.urls[0],
                )
            parse_url(instance.urls[0])
            return RedisClient(instance)
        return RedisClient(instance, parse_nodes(instance.urls))
    except ValueError as e:
        raise ConnectError(f"invalid redis url in {instance.urls}: {e}") from e


def scan_keys(r: Redis, count: int = 1000) -> Iterator[str]:
    """Yield every key name from cursor 0 until the server returns cursor 0."""
    cursor = 0
    while True:
        cursor, keys = r.scan(cursor=cursor, count=count)
        for key in keys:
            yield key
        if int(cursor) == 0:
            break


def key_type(r: Redis, key: str) -> str:
    t = r.type(key)
    if isinstance(t, str):
        return t
    elif isinstance(t, bytes):
        return t.decode()
    else:
        return str(t)


def split_key_types(keys: Iterable[str], r: Redis) -> tuple[list[RedisKey], list[tuple[str, str]]]:
    """Classify keys into comparable ones and (name, type) pairs of other types.

    Keys that vanished since the scan, or whose TYPE failed, are in neither list.
    """
    rediskeys: list[RedisKey] = []
    others: list[tuple[str, str]] = []
    for key in keys:
        try:
            t = key_type(r, key)
        except RedisError as e:
            logger.error("TYPE %s failed: %s", key, e)
            continue
        kt = RedisKeyType.parse(t)
        if kt is not None:
            rediskeys.append(RedisKey(name=key, key_type=kt))
        elif t != "none":
            others.append((key, t))
    return rediskeys, others


def resolve_key_types(keys: Iterable[str], r: Redis) -> list[RedisKey]:
    rediskeys, others = split_key_types(keys, r)
    for key, t in others:
        logger.warning("skip key %s: type %s is not compared", key, t)
    return rediskeys
