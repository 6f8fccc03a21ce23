"""Tagged step results: expected failures travel as values, not exceptions."""
from dataclasses import dataclass
from typing import Generic, TypeVar, Union

from checkout_backend.core.errors import AppError

T = TypeVar("T")


@dataclass(frozen=True)
class Success(Generic[T]):
    value: T
    ok: bool = True


@dataclass(frozen=True)
class Failure:
    error: AppError
    ok: bool = False


StepResult = Union[Success, Failure]
