from __future__ import annotations

import threading

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from redis_compare.errors import ConnectError
from redis_compare.redis_utils import RedisConnection


class FakeServer:
    """In-memory keyspace: db -> key -> (type, value), plus per-db TTLs."""

    def __init__(self):
        self.dbs: dict[int, dict[str, tuple[str, object]]] = {}
        self.ttls: dict[int, dict[str, int]] = {}
        self.failing: set[str] = set()

    def db(self, n: int) -> dict:
        return self.dbs.setdefault(n, {})

    def set(self, key, value, db=0, ttl=-1):
        self.db(db)[key] = ("string", value)
        self._ttl(key, db, ttl)

    def rpush(self, key, values, db=0, ttl=-1):
        self.db(db)[key] = ("list", list(values))
        self._ttl(key, db, ttl)

    def sadd(self, key, members, db=0, ttl=-1):
        self.db(db)[key] = ("set", set(members))
        self._ttl(key, db, ttl)

    def zadd(self, key, mapping, db=0, ttl=-1):
        self.db(db)[key] = ("zset", {m: float(s) for m, s in mapping.items()})
        self._ttl(key, db, ttl)

    def hset(self, key, mapping, db=0, ttl=-1):
        self.db(db)[key] = ("hash", dict(mapping))
        self._ttl(key, db, ttl)

    def raw(self, key, key_type, value, db=0):
        self.db(db)[key] = (key_type, value)

    def _ttl(self, key, db, ttl):
        self.ttls.setdefault(db, {})[key] = ttl


class FakeRedis:
    """The slice of the redis-py command API the compare code calls."""

    def __init__(self, server: FakeServer, db: int = 0):
        self.server = server
        self.current_db = db
        self.closed = False

    def _check(self, op: str):
        if op in self.server.failing:
            raise RedisConnectionError(f"{op} failed")

    def _entry(self, key):
        return self.server.db(self.current_db).get(key)

    def _value(self, key, key_type):
        entry = self._entry(key)
        if entry is None:
            return None
        assert entry[0] == key_type, f"WRONGTYPE {key}"
        return entry[1]

    def execute_command(self, *args):
        self._check(args[0].lower())
        if args[0].upper() == "SELECT":
            self.current_db = int(args[1])
            return True
        raise NotImplementedError(args[0])

    def close(self):
        self.closed = True

    def scan(self, cursor=0, count=10, **kwargs):
        self._check("scan")
        keys = sorted(self.server.db(self.current_db))
        end = cursor + count
        return (end if end < len(keys) else 0), keys[cursor:end]

    def exists(self, key):
        self._check("exists")
        return 1 if self._entry(key) is not None else 0

    def type(self, key):
        self._check("type")
        entry = self._entry(key)
        return entry[0] if entry else "none"

    def ttl(self, key):
        self._check("ttl")
        if self._entry(key) is None:
            return -2
        return self.server.ttls.get(self.current_db, {}).get(key, -1)

    def get(self, key):
        self._check("get")
        return self._value(key, "string")

    def llen(self, key):
        return len(self._value(key, "list") or [])

    def lrange(self, key, start, end):
        values = self._value(key, "list") or []
        return values[start : end + 1]

    def scard(self, key):
        return len(self._value(key, "set") or set())

    def sscan_iter(self, key, count=None):
        yield from sorted(self._value(key, "set") or set())

    def sismember(self, key, member):
        return member in (self._value(key, "set") or set())

    def zcard(self, key):
        return len(self._value(key, "zset") or {})

    def zscan_iter(self, key, count=None):
        yield from sorted((self._value(key, "zset") or {}).items())

    def zscore(self, key, member):
        return (self._value(key, "zset") or {}).get(member)

    def hlen(self, key):
        return len(self._value(key, "hash") or {})

    def hscan_iter(self, key, count=None):
        yield from sorted((self._value(key, "hash") or {}).items())

    def hget(self, key, field):
        return (self._value(key, "hash") or {}).get(field)


class FakeClient:
    """Stands in for RedisClient; hands out connections to a FakeServer."""

    def __init__(self, instance, server: FakeServer, fail_after: int | None = None, primaries=None):
        self.instance = instance
        self.server = server
        self.fail_after = fail_after
        self.connections: list[RedisConnection] = []
        self._primaries = primaries
        self._lock = threading.Lock()

    @property
    def instance_type(self):
        return self.instance.instance_type

    def connection(self) -> RedisConnection:
        with self._lock:
            if self.fail_after is not None and len(self.connections) >= self.fail_after:
                raise ConnectError("connection refused")
            conn = RedisConnection(self.instance.instance_type, FakeRedis(self.server))
            self.connections.append(conn)
            return conn

    def primaries(self):
        if self._primaries is not None:
            return self._primaries
        return [self.instance]


def fake_open_client(servers: dict, client_kwargs: dict | None = None):
    """open_client replacement keyed by the instance's first url."""
    clients: dict[str, FakeClient] = {}

    def _open(instance):
        url = instance.urls[0]
        if url not in servers:
            raise ConnectError(f"invalid redis url in {instance.urls}")
        if url not in clients:
            clients[url] = FakeClient(instance, servers[url], **(client_kwargs or {}).get(url, {}))
        return clients[url]

    _open.clients = clients
    return _open


@pytest.fixture
def source_server():
    return FakeServer()


@pytest.fixture
def target_server():
    return FakeServer()


@pytest.fixture
def sconn(source_server):
    return FakeRedis(source_server)


@pytest.fixture
def tconn(target_server):
    return FakeRedis(target_server)
