"""Minimal Ok/Err result type for pipeline stage boundaries.

Callers branch with ``isinstance(result, Ok)`` or ``match``; there is no
implicit unwrap that could turn an ``Err`` back into an exception.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")
E = TypeVar("E")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def is_ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err(Generic[E]):
    error: E

    @property
    def is_ok(self) -> bool:
        return False


Result = Ok[T] | Err[E]
