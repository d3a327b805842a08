from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

UNEXPECTED_STATUS = "unexpected_status"
UNEXPECTED_BODY = "unexpected_body"
TRANSPORT = "transport"

BodyPredicate = Callable[[Any], bool]


@dataclass(frozen=True)
class Expectation:
    """What a step expects back: a status code and optionally a body shape."""

    status: int
    body: Optional[BodyPredicate] = None
    description: str = ""


@dataclass(frozen=True)
class CheckResult:
    name: str
    passed: bool
    timestamp: float
    vu_id: Optional[int] = None
    status_code: Optional[int] = None
    failure: Optional[str] = None
    detail: str = ""

    @property
    def transport_failure(self) -> bool:
        return self.failure == TRANSPORT

    def as_row(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "passed": self.passed,
            "timestamp": self.timestamp,
            "vu_id": self.vu_id,
            "status_code": self.status_code,
            "failure": self.failure,
            "detail": self.detail,
        }


def evaluate(
    name: str,
    response: Any,
    expected: Expectation,
    *,
    vu_id: Optional[int] = None,
    now: Optional[float] = None,
) -> CheckResult:
    """Judge one HTTP response against ``expected``.

    ``response`` only needs ``status_code`` and ``json()``, so both a
    ``requests.Response`` and a test double work.
    """
    timestamp = time.time() if now is None else now
    status = response.status_code

    if status != expected.status:
        return CheckResult(
            name=name,
            passed=False,
            timestamp=timestamp,
            vu_id=vu_id,
            status_code=status,
            failure=UNEXPECTED_STATUS,
            detail=f"expected {expected.status}, got {status}",
        )

    if expected.body is not None:
        try:
            payload = response.json()
        except ValueError:
            return CheckResult(
                name=name,
                passed=False,
                timestamp=timestamp,
                vu_id=vu_id,
                status_code=status,
                failure=UNEXPECTED_BODY,
                detail="response body is not valid JSON",
            )
        if not expected.body(payload):
            return CheckResult(
                name=name,
                passed=False,
                timestamp=timestamp,
                vu_id=vu_id,
                status_code=status,
                failure=UNEXPECTED_BODY,
                detail=expected.description or "response body did not match",
            )

    return CheckResult(
        name=name,
        passed=True,
        timestamp=timestamp,
        vu_id=vu_id,
        status_code=status,
    )


def transport_failure(
    name: str,
    exc: BaseException,
    *,
    vu_id: Optional[int] = None,
    now: Optional[float] = None,
) -> CheckResult:
    return CheckResult(
        name=name,
        passed=False,
        timestamp=time.time() if now is None else now,
        vu_id=vu_id,
        failure=TRANSPORT,
        detail=f"{type(exc).__name__}: {exc}",
    )


def json_field_equals(key: str, expected: Any) -> BodyPredicate:
    def predicate(payload: Any) -> bool:
        return isinstance(payload, dict) and payload.get(key) == expected

    return predicate


def json_field_is_list(key: str) -> BodyPredicate:
    def predicate(payload: Any) -> bool:
        return isinstance(payload, dict) and isinstance(payload.get(key), list)

    return predicate


__all__ = [
    "CheckResult",
    "Expectation",
    "TRANSPORT",
    "UNEXPECTED_BODY",
    "UNEXPECTED_STATUS",
    "evaluate",
    "json_field_equals",
    "json_field_is_list",
    "transport_failure",
]
