"""
Explicit success/failure values for the poll-cycle boundary.

The scheduler turns every adapter call into an ``Ok`` or ``Err`` so that a
failing source is recorded and isolated instead of unwinding the loop.
"""

from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    error: BaseException

    @property
    def ok(self) -> bool:
        return False

    @property
    def message(self) -> str:
        text = str(self.error)
        return text or type(self.error).__name__


Result = Ok[T] | Err
