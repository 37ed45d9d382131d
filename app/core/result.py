"""
Result Types
============

Explicit success/failure values for flows where the caller must decide
whether a failure is fatal (reconciliation) instead of catching exceptions.
"""

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar, Union

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def is_ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    reason: str
    code: Optional[str] = None

    @property
    def is_ok(self) -> bool:
        return False


Result = Union[Ok[T], Err]
