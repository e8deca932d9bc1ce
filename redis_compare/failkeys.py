from __future__ import annotations

import logging
import random
import tempfile
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import msgpack
from botocore.exceptions import BotoCoreError, ClientError

from redis_compare.errors import IffyKey
from redis_compare.models import InstanceType, InstanceWithDB
from redis_compare.s3_utils import (
    download_file,
    get_s3_client,
    parse_s3_uri,
    split_object_uri,
    upload_file,
)

logger = logging.getLogger(__name__)

ARTIFACT_SUFFIX = ".cr"


def gen_run_id() -> str:
    ts = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    suffix = f"{random.randrange(16**4):04x}"
    return f"compare-{ts}-{suffix}"


@dataclass
class FailKeys:
    """Keys flagged by one comparison task, re-checkable later from disk."""

    source: list[InstanceWithDB]
    target: InstanceWithDB
    keys: list[IffyKey] = field(default_factory=list)
    reverse: bool = False
    ttl_diff: int = 1
    batch: int = 10

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": [s.to_dict() for s in self.source],
            "target": self.target.to_dict(),
            "keys": [k.to_dict() for k in self.keys],
            "reverse": self.reverse,
            "ttl_diff": self.ttl_diff,
            "batch": self.batch,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> FailKeys:
        return cls(
            source=[InstanceWithDB.from_dict(s) for s in d["source"]],
            target=InstanceWithDB.from_dict(d["target"]),
            keys=[IffyKey.from_dict(k) for k in d["keys"]],
            reverse=bool(d.get("reverse", False)),
            ttl_diff=int(d.get("ttl_diff", 1)),
            batch=int(d.get("batch", 10)),
        )

    def to_bytes(self) -> bytes:
        return msgpack.packb(self.to_dict(), use_bin_type=True, unicode_errors="surrogateescape")

    @classmethod
    def from_bytes(cls, buf: bytes) -> FailKeys:
        return cls.from_dict(msgpack.unpackb(buf, raw=False, unicode_errors="surrogateescape"))

    def write_to_file(self, out_dir: Path) -> Path:
        out_dir.mkdir(parents=True, exist_ok=True)
        p = out_dir / f"{time.time_ns()}_{random.randrange(16**4):04x}{ARTIFACT_SUFFIX}"
        p.write_bytes(self.to_bytes())
        return p

    def log(self) -> None:
        direction = "reverse" if self.reverse else "forward"
        sources = ", ".join(s.describe() for s in self.source)
        logger.warning(
            "%s compare found %d iffy keys: source=%s target=%s",
            direction,
            len(self.keys),
            sources,
            self.target.describe(),
        )
        for k in self.keys:
            logger.warning("  %s", k)

    def compare(self) -> list[IffyKey]:
        """Re-run the checks for every flagged key against the live stores."""
        from redis_compare.comparer import Comparer
        from redis_compare.redis_utils import open_client
        from redis_compare.reverse import check_reverse

        if not self.source:
            return []
        target = open_client(self.target.instance)
        with target.connection() as tconn:
            if tconn.instance_type is InstanceType.SINGLE:
                tconn.select_db(self.target.db)

            if not self.reverse:
                src = self.source[0]
                with open_client(src.instance).connection() as sconn:
                    sconn.select_db(src.db)
                    comparer = Comparer(sconn.redis, tconn.redis, self.ttl_diff, self.batch)
                    return comparer.compare_rediskeys([k.key for k in self.keys])

            sconns = []
            try:
                for src in self.source:
                    conn = open_client(src.instance).connection()
                    sconns.append(conn)
                    conn.select_db(src.db)
                return check_reverse([k.key for k in self.keys], [c.redis for c in sconns])
            finally:
                for conn in sconns:
                    conn.close()


def read_artifact(path: str) -> FailKeys:
    if path.startswith("s3://"):
        loc, name = split_object_uri(path)
        with tempfile.TemporaryDirectory() as tmp:
            local = Path(tmp) / name
            download_file(get_s3_client(), loc, name, str(local))
            return FailKeys.from_bytes(local.read_bytes())
    return FailKeys.from_bytes(Path(path).read_bytes())


def compare_from_file(path: str) -> FailKeys:
    """Replay a failure artifact and return what is still iffy."""
    fk = read_artifact(path)
    return replace(fk, keys=fk.compare())


class FailureRecorder:
    """Logs FailKeys and, when a result dir is configured, persists them.

    Shared by all tasks of a run; artifacts of one run land in one directory
    named after the run id.
    """

    def __init__(self, result_dir: str | None = None, s3_uri: str | None = None, run_id: str | None = None):
        self.run_id = run_id or gen_run_id()
        self.out_dir = Path(result_dir).expanduser().resolve() / self.run_id if result_dir else None
        self.s3_loc = parse_s3_uri(s3_uri)
        self._s3 = None
        self._lock = threading.Lock()
        self.recorded: list[FailKeys] = []

    def _s3_client(self):
        with self._lock:
            if self._s3 is None:
                self._s3 = get_s3_client()
            return self._s3

    def record(self, fk: FailKeys) -> Path | None:
        fk.log()
        with self._lock:
            self.recorded.append(fk)
        if self.out_dir is None:
            return None

        try:
            path = fk.write_to_file(self.out_dir)
        except OSError as e:
            logger.error("write failure artifact to %s failed: %s", self.out_dir, e)
            return None
        logger.info("failure artifact written: %s", path)

        if self.s3_loc is not None:
            try:
                uri = upload_file(self._s3_client(), self.s3_loc, str(path), f"{self.run_id}/{path.name}")
                logger.info("failure artifact uploaded: %s", uri)
            except (BotoCoreError, ClientError) as e:
                logger.error("upload %s failed: %s", path, e)
        return path
