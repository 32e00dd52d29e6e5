"""Tagged result values returned by the auth services.

Expected failures (bad password, unknown token, duplicate email) come back as
``Err`` carrying a :class:`ServiceError`; callers branch on ``result.ok`` or
``isinstance`` instead of catching. Only the HTTP boundary turns an ``Err``
back into a raised error via :func:`unwrap`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar, Union

from nestauth.service.errors import ServiceError

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    error: ServiceError

    @property
    def ok(self) -> bool:
        return False


Result = Union[Ok[T], Err]


def unwrap(result: "Result[T]") -> T:
    """Return the Ok value or raise the carried error."""
    if isinstance(result, Err):
        raise result.error
    return result.value


__all__ = ["Ok", "Err", "Result", "unwrap"]
