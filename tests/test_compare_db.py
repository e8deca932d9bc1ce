import threading
import time
from unittest.mock import MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from conftest import FakeClient, FakeRedis, FakeServer, fake_open_client
from redis_compare.compare_db import BoundedPool, CompareDB, connection_pair, dispatch, iter_batches
from redis_compare.errors import CompareErrorType, ConnectError
from redis_compare.failkeys import FailureRecorder
from redis_compare.models import InstanceType, InstanceWithDB, RedisInstance
from redis_compare.redis_utils import RedisConnection

SOURCE_URL = "redis://source:6379"
TARGET_URL = "redis://target:6379"


def single(url):
    return RedisInstance(urls=[url])


def compare_db(source_db=0, target_db=0, **kwargs):
    kwargs.setdefault("recorder", FailureRecorder(run_id="test"))
    return CompareDB(
        source=InstanceWithDB(single(SOURCE_URL), source_db),
        target=InstanceWithDB(single(TARGET_URL), target_db),
        **kwargs,
    )


def test_iter_batches_flushes_trailing_batch():
    keys = [f"k{i}" for i in range(23)]

    sizes = [len(b) for b in iter_batches(keys, 10)]

    assert sizes == [10, 10, 3]


def test_iter_batches_exact_multiple():
    assert [len(b) for b in iter_batches(range(20), 10)] == [10, 10]


def test_iter_batches_empty():
    assert list(iter_batches([], 10)) == []


def test_bounded_pool_rejects_zero_workers():
    with pytest.raises(ValueError):
        BoundedPool(0)


def test_bounded_pool_never_runs_more_than_workers():
    workers = 3
    lock = threading.Lock()
    running = 0
    peak = 0

    def task(i):
        nonlocal running, peak
        with lock:
            running += 1
            peak = max(peak, running)
        time.sleep(0.01)
        with lock:
            running -= 1
        return i

    with BoundedPool(workers) as pool:
        for i in range(12):
            pool.submit(task, i)

    assert peak <= workers
    assert sorted(pool.results()) == list(range(12))


def test_bounded_pool_submit_blocks_while_full():
    release = threading.Event()
    submitted = threading.Event()
    pool = BoundedPool(1)
    pool.submit(release.wait)

    def submit_second():
        pool.submit(lambda: None)
        submitted.set()

    t = threading.Thread(target=submit_second)
    t.start()
    assert not submitted.wait(0.1)

    release.set()
    assert submitted.wait(2)
    t.join()
    pool.shutdown()


def test_bounded_pool_results_drop_failed_tasks():
    def boom():
        raise RuntimeError("boom")

    with BoundedPool(2) as pool:
        pool.submit(boom)
        pool.submit(lambda: "ok")
        pool.submit(lambda: None)

    assert pool.results() == ["ok"]


def test_dispatch_counts_every_key(source_server):
    for i in range(23):
        source_server.set(f"k{i:02d}", "v")
    scan_conn = RedisConnection(InstanceType.SINGLE, FakeRedis(source_server))
    seen = []

    with BoundedPool(2) as pool:
        total = dispatch(scan_conn, 10, 7, pool, lambda batch: (lambda: seen.append(len(batch))))

    assert total == 23
    assert sorted(seen) == [3, 10, 10]


def test_dispatch_stops_on_connect_error(source_server):
    for i in range(30):
        source_server.set(f"k{i:02d}", "v")
    scan_conn = RedisConnection(InstanceType.SINGLE, FakeRedis(source_server))
    calls = []

    def make_task(batch):
        if calls:
            raise ConnectError("refused")
        calls.append(batch)
        return lambda: None

    with BoundedPool(2) as pool:
        total = dispatch(scan_conn, 10, 100, pool, make_task)

    assert total == 10


def test_compare_db_batches_every_key(source_server, target_server):
    for i in range(23):
        source_server.set(f"k{i:02d}", "v")
    servers = {SOURCE_URL: source_server, TARGET_URL: target_server}

    with patch("redis_compare.compare_db.open_client", fake_open_client(servers)):
        results = compare_db(batch_size=10, compare_pool=2).compare()

    assert sorted(len(fk.keys) for fk in results) == [3, 10, 10]
    names = {ik.key.name for fk in results for ik in fk.keys}
    assert names == {f"k{i:02d}" for i in range(23)}
    assert all(ik.error.error_type is CompareErrorType.EXISTS_ERR for fk in results for ik in fk.keys)


def test_compare_db_uses_mapped_dbs(source_server, target_server):
    source_server.set("same", "v", db=1)
    source_server.set("changed", "old", db=1)
    target_server.set("same", "v", db=4)
    target_server.set("changed", "new", db=4)
    # a key with the right value in the wrong db does not count
    target_server.set("changed", "old", db=1)
    servers = {SOURCE_URL: source_server, TARGET_URL: target_server}

    with patch("redis_compare.compare_db.open_client", fake_open_client(servers)):
        results = compare_db(source_db=1, target_db=4).compare()

    assert len(results) == 1
    fk = results[0]
    assert [ik.key.name for ik in fk.keys] == ["changed"]
    assert fk.source == [InstanceWithDB(single(SOURCE_URL), 1)]
    assert fk.target == InstanceWithDB(single(TARGET_URL), 4)
    assert fk.reverse is False


def test_compare_db_no_differences(source_server, target_server):
    for s in (source_server, target_server):
        s.hset("h", {"a": "1"}, ttl=60)
        s.zadd("z", {"m": 1})
    servers = {SOURCE_URL: source_server, TARGET_URL: target_server}
    recorder = FailureRecorder(run_id="test")

    with patch("redis_compare.compare_db.open_client", fake_open_client(servers)):
        results = compare_db(recorder=recorder).compare()

    assert results == []
    assert recorder.recorded == []


def test_compare_db_records_through_recorder(source_server, target_server):
    source_server.set("missing", "v")
    servers = {SOURCE_URL: source_server, TARGET_URL: target_server}
    recorder = FailureRecorder(run_id="test")

    with patch("redis_compare.compare_db.open_client", fake_open_client(servers)):
        results = compare_db(recorder=recorder).compare()

    assert recorder.recorded == results


def test_compare_db_closes_task_connections(source_server, target_server):
    for i in range(15):
        source_server.set(f"k{i:02d}", "v")
    servers = {SOURCE_URL: source_server, TARGET_URL: target_server}
    opener = fake_open_client(servers)

    with patch("redis_compare.compare_db.open_client", opener):
        compare_db().compare()

    conns = opener.clients[SOURCE_URL].connections + opener.clients[TARGET_URL].connections
    assert conns
    assert all(c.redis.closed for c in conns)


def test_compare_db_rejects_cluster_source(source_server, target_server):
    servers = {SOURCE_URL: source_server, TARGET_URL: target_server}
    cluster = RedisInstance(urls=[SOURCE_URL], instance_type=InstanceType.CLUSTER)
    job = CompareDB(
        source=InstanceWithDB(cluster, 0),
        target=InstanceWithDB(single(TARGET_URL), 0),
        recorder=FailureRecorder(run_id="test"),
    )

    opener = fake_open_client(servers)
    with patch("redis_compare.compare_db.open_client", opener):
        assert job.compare() == []
    assert opener.clients == {}


def test_compare_db_bad_pool_size_aborts(source_server, target_server):
    source_server.set("k", "v")
    servers = {SOURCE_URL: source_server, TARGET_URL: target_server}

    with patch("redis_compare.compare_db.open_client", fake_open_client(servers)):
        assert compare_db(compare_pool=0).compare() == []


def test_compare_db_unknown_url_aborts():
    with patch("redis_compare.compare_db.open_client", fake_open_client({})):
        assert compare_db().compare() == []


def test_compare_db_connection_failure_stops_dispatch(source_server, target_server):
    for i in range(23):
        source_server.set(f"k{i:02d}", "v")
    servers = {SOURCE_URL: source_server, TARGET_URL: target_server}
    # the target accepts one connection: the first batch's
    opener = fake_open_client(servers, {TARGET_URL: {"fail_after": 1}})

    with patch("redis_compare.compare_db.open_client", opener):
        results = compare_db(batch_size=10).compare()

    assert [len(fk.keys) for fk in results] == [10]
    source_conns = opener.clients[SOURCE_URL].connections
    assert all(c.redis.closed for c in source_conns)


def test_compare_db_scan_failure_keeps_dispatched_results(source_server, target_server):
    source_server.set("k", "v")
    source_server.failing.add("scan")
    servers = {SOURCE_URL: source_server, TARGET_URL: target_server}

    with patch("redis_compare.compare_db.open_client", fake_open_client(servers)):
        assert compare_db().compare() == []


def test_compare_db_cluster_target_skips_select():
    source_server = FakeServer()
    target_server = FakeServer()
    source_server.set("a", "1")
    source_server.set("b", "2")
    target_server.set("a", "1")
    servers = {SOURCE_URL: source_server, TARGET_URL: target_server}
    cluster = RedisInstance(urls=[TARGET_URL], instance_type=InstanceType.CLUSTER)
    job = CompareDB(
        source=InstanceWithDB(single(SOURCE_URL), 0),
        target=InstanceWithDB(cluster, 0),
        recorder=FailureRecorder(run_id="test"),
    )

    with patch("redis_compare.compare_db.open_client", fake_open_client(servers)):
        results = job.compare()

    assert [ik.key.name for fk in results for ik in fk.keys] == ["b"]


def test_connection_pair_closes_source_when_target_fails(source_server, target_server):
    s_client = FakeClient(single(SOURCE_URL), source_server)
    t_client = FakeClient(single(TARGET_URL), target_server, fail_after=0)

    with pytest.raises(ConnectError):
        connection_pair(s_client, t_client)

    assert [c.redis.closed for c in s_client.connections] == [True]


def test_connection_pair_closes_source_on_wire_error(source_server, target_server):
    s_client = FakeClient(single(SOURCE_URL), source_server)
    t_client = MagicMock()
    t_client.connection.side_effect = RedisConnectionError("reset by peer")

    with pytest.raises(RedisConnectionError):
        connection_pair(s_client, t_client)

    assert [c.redis.closed for c in s_client.connections] == [True]
