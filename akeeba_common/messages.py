import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

ENCAPSULATION_RAW = 1   # plain (unencrypted) JSON body


@dataclass(frozen=True)
class Challenge:
    salt: int      # timestamp in ms
    digest: str    # md5 hex of str(salt) + secret

    def __str__(self) -> str:
        return f"{self.salt}:{self.digest}"


# The body is a JSON string inside the JSON envelope, so it is serialized twice.
@dataclass(frozen=True)
class RequestEnvelope:
    body: str                 # '{"method": ..., "challenge": "<salt>:<md5>", "data": {...}|null}'
    encapsulation: int = ENCAPSULATION_RAW

    def to_json(self) -> str:
        return json.dumps({"encapsulation": self.encapsulation, "body": self.body})


class DecodeStatus(Enum):
    OK = "ok"            # non-empty payload
    EMPTY = "empty"      # valid response carrying an empty payload
    FAILED = "failed"    # padding, JSON or logical status error


@dataclass(frozen=True)
class DecodeResult:
    status: DecodeStatus
    data: Any = None
    reason: Optional[str] = None

    @classmethod
    def ok(cls, data: Any) -> "DecodeResult":
        return cls(DecodeStatus.OK, data)

    @classmethod
    def empty(cls, data: Any = None) -> "DecodeResult":
        return cls(DecodeStatus.EMPTY, data)

    @classmethod
    def failed(cls, reason: str) -> "DecodeResult":
        return cls(DecodeStatus.FAILED, None, reason)

    @property
    def is_ok(self) -> bool:
        return self.status is DecodeStatus.OK

    @property
    def is_empty(self) -> bool:
        return self.status is DecodeStatus.EMPTY

    @property
    def is_failed(self) -> bool:
        return self.status is DecodeStatus.FAILED

    def __bool__(self) -> bool:
        return self.is_ok
