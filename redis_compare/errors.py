from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from redis_compare.models import RedisKey


class ConnectError(Exception):
    """Client could not be built or a connection could not be established."""


class ConfigError(ValueError):
    """Scenario description is malformed."""


class UnsupportedOperation(RuntimeError):
    """Operation is not legal for the connection's topology."""


class CompareErrorType(Enum):
    TTL_DIFF = (1000, "TTL different")
    EXISTS_ERR = (1001, "Key not exists")
    STRING_VALUE_NOT_EQUAL = (1002, "String value not equal")
    LIST_LEN_DIFF = (1003, "List length different")
    LIST_INDEX_VALUE_DIFF = (1004, "List index value different")
    SET_CARD_DIFF = (1005, "Set cardinality different")
    SET_MEMBER_NOT_IN = (1006, "Member not in set")
    ZSET_CARD_DIFF = (1007, "Sorted set cardinality different")
    ZSET_MEMBER_SCORE_DIFF = (1008, "Sorted set member score different")
    HASH_LEN_DIFF = (1009, "Hash length different")
    HASH_FIELD_VALUE_DIFF = (1010, "Hash field value different")
    UNKNOWN = (9999, "Unknown")

    def __init__(self, code: int, description: str):
        self.code = code
        self.description = description

    def __str__(self) -> str:
        return self.description

    @classmethod
    def from_code(cls, code: int) -> CompareErrorType:
        for t in cls:
            if t.code == code:
                return t
        return cls.UNKNOWN


@dataclass(frozen=True)
class CompareError:
    error_type: CompareErrorType
    message: str | None = None
    cause: str | None = None
    # list index, zset member or hash field the mismatch was seen at
    position: str | None = None

    @property
    def code(self) -> int:
        return self.error_type.code

    def __str__(self) -> str:
        parts = [f"[{self.code}] {self.message or self.error_type.description}"]
        if self.position is not None:
            parts.append(f"at {self.position}")
        if self.cause:
            parts.append(f"({self.cause})")
        return " ".join(parts)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "cause": self.cause,
            "position": self.position,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> CompareError:
        return cls(
            error_type=CompareErrorType.from_code(int(d["code"])),
            message=d.get("message"),
            cause=d.get("cause"),
            position=d.get("position"),
        )


@dataclass(frozen=True)
class IffyKey:
    key: RedisKey
    error: CompareError

    def __str__(self) -> str:
        return f"{self.key.name} ({self.key.key_type.value}): {self.error}"

    def to_dict(self) -> dict[str, Any]:
        return {"key": self.key.to_dict(), "error": self.error.to_dict()}

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> IffyKey:
        from redis_compare.models import RedisKey

        return cls(key=RedisKey.from_dict(d["key"]), error=CompareError.from_dict(d["error"]))
