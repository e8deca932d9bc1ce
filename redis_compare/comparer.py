from __future__ import annotations

import logging
from itertools import zip_longest

from redis.exceptions import RedisClusterException, RedisError

from redis_compare.errors import CompareError, CompareErrorType, IffyKey
from redis_compare.models import RedisKey, RedisKeyType
from redis_compare.redis_utils import key_type

logger = logging.getLogger(__name__)

NO_EXPIRY = -1
NOT_EXISTS = -2

WIRE_ERRORS = (RedisError, RedisClusterException)


def ttl_within(s_ttl: int, t_ttl: int, ttl_diff: int) -> bool:
    if s_ttl == NO_EXPIRY and t_ttl == NO_EXPIRY:
        return True
    if s_ttl == NO_EXPIRY or t_ttl == NO_EXPIRY:
        return False
    return abs(s_ttl - t_ttl) <= ttl_diff


class Comparer:
    """Checks keys of one source db against one target db.

    ``sconn`` and ``tconn`` are redis-py clients (``Redis`` or ``RedisCluster``)
    already pointed at the right logical databases.
    """

    def __init__(self, sconn, tconn, ttl_diff: int = 1, batch: int = 10):
        self.sconn = sconn
        self.tconn = tconn
        self.ttl_diff = ttl_diff
        self.batch = max(1, batch)
        self._checks = {
            RedisKeyType.STRING: self.compare_string,
            RedisKeyType.LIST: self.compare_list,
            RedisKeyType.SET: self.compare_set,
            RedisKeyType.ZSET: self.compare_zset,
            RedisKeyType.HASH: self.compare_hash,
        }

    def compare_rediskeys(self, keys: list[RedisKey]) -> list[IffyKey]:
        iffy: list[IffyKey] = []
        for key in keys:
            try:
                iffy.extend(self.compare_key(key))
            except WIRE_ERRORS as e:
                logger.error("compare %s inconclusive: %s", key.name, e)
        return iffy

    def compare_key(self, key: RedisKey) -> list[IffyKey]:
        """Every failing check yields its own IffyKey; a missing key yields only one."""
        if not self.tconn.exists(key.name):
            return [
                IffyKey(
                    key,
                    CompareError(CompareErrorType.EXISTS_ERR, "key not exists in target"),
                )
            ]

        found: list[IffyKey] = []
        t_type = key_type(self.tconn, key.name)
        if t_type != key.key_type.value:
            err = CompareError(
                CompareErrorType.UNKNOWN,
                "key type different",
                cause=f"source={key.key_type.value} target={t_type}",
            )
        else:
            err = self._checks[key.key_type](key.name)
        if err is not None:
            found.append(IffyKey(key, err))

        err = self.compare_ttl(key.name)
        if err is not None:
            found.append(IffyKey(key, err))
        return found

    def compare_ttl(self, name: str) -> CompareError | None:
        s_ttl = self.sconn.ttl(name)
        t_ttl = self.tconn.ttl(name)
        if s_ttl == NOT_EXISTS or t_ttl == NOT_EXISTS:
            logger.debug("key %s expired during compare, ttl skipped", name)
            return None
        if ttl_within(s_ttl, t_ttl, self.ttl_diff):
            return None
        return CompareError(
            CompareErrorType.TTL_DIFF,
            "ttl diff too large",
            cause=f"source={s_ttl} target={t_ttl} tolerance={self.ttl_diff}",
        )

    def compare_string(self, name: str) -> CompareError | None:
        if self.sconn.get(name) != self.tconn.get(name):
            return CompareError(CompareErrorType.STRING_VALUE_NOT_EQUAL, "key value not equal")
        return None

    def compare_list(self, name: str) -> CompareError | None:
        s_len = self.sconn.llen(name)
        t_len = self.tconn.llen(name)
        if s_len != t_len:
            return CompareError(
                CompareErrorType.LIST_LEN_DIFF,
                "list len diff",
                cause=f"source={s_len} target={t_len}",
            )

        for start in range(0, s_len, self.batch):
            end = start + self.batch - 1
            s_elements = self.sconn.lrange(name, start, end)
            t_elements = self.tconn.lrange(name, start, end)
            for offset, (s_val, t_val) in enumerate(zip_longest(s_elements, t_elements)):
                if s_val != t_val:
                    return CompareError(
                        CompareErrorType.LIST_INDEX_VALUE_DIFF,
                        "list index value diff",
                        position=f"index {start + offset}",
                    )
        return None

    def compare_set(self, name: str) -> CompareError | None:
        s_size = self.sconn.scard(name)
        t_size = self.tconn.scard(name)
        if s_size != t_size:
            return CompareError(
                CompareErrorType.SET_CARD_DIFF,
                "set members diff",
                cause=f"source={s_size} target={t_size}",
            )

        # source members only; equal cardinality makes this a full check
        # unless the sets change while being compared
        for member in self.sconn.sscan_iter(name, count=self.batch):
            if not self.tconn.sismember(name, member):
                return CompareError(
                    CompareErrorType.SET_MEMBER_NOT_IN,
                    "set member not in target",
                    position=f"member {member}",
                )
        return None

    def compare_zset(self, name: str) -> CompareError | None:
        s_size = self.sconn.zcard(name)
        t_size = self.tconn.zcard(name)
        if s_size != t_size:
            return CompareError(
                CompareErrorType.ZSET_CARD_DIFF,
                "sorted set members diff",
                cause=f"source={s_size} target={t_size}",
            )

        for member, score in self.sconn.zscan_iter(name, count=self.batch):
            t_score = self.tconn.zscore(name, member)
            if t_score is None or float(t_score) != float(score):
                return CompareError(
                    CompareErrorType.ZSET_MEMBER_SCORE_DIFF,
                    "zset member score diff",
                    cause=f"source={score} target={t_score}",
                    position=f"member {member}",
                )
        return None

    def compare_hash(self, name: str) -> CompareError | None:
        s_len = self.sconn.hlen(name)
        t_len = self.tconn.hlen(name)
        if s_len != t_len:
            return CompareError(
                CompareErrorType.HASH_LEN_DIFF,
                "hash len diff",
                cause=f"source={s_len} target={t_len}",
            )

        for field, value in self.sconn.hscan_iter(name, count=self.batch):
            if self.tconn.hget(name, field) != value:
                return CompareError(
                    CompareErrorType.HASH_FIELD_VALUE_DIFF,
                    "hash field value diff",
                    position=f"field {field}",
                )
        return None
