"""Success/failure contract shared by every fallible operation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, Literal, NoReturn, TypeAlias, TypeVar, Union

T = TypeVar("T")
E = TypeVar("E", bound=BaseException)


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    """Successful outcome carrying the produced value."""

    data: T
    success: Literal[True] = True

    def unwrap(self) -> T:
        return self.data


@dataclass(frozen=True, slots=True)
class Err(Generic[E]):
    """Failed outcome carrying the error that stopped the operation."""

    error: E
    success: Literal[False] = False

    def unwrap(self) -> NoReturn:
        raise self.error


Result: TypeAlias = Union[Ok[T], Err[E]]
