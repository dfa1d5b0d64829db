"""
Explicit result types for orchestrator operations.

Callers branch on ``result.ok`` instead of catching exceptions for expected
outcomes such as validation failures or declined payments.
"""
from dataclasses import dataclass
from typing import Generic, TypeVar, Union

from ..exceptions import PaymentError

T = TypeVar("T")
E = TypeVar("E", bound=PaymentError)


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T
    ok: bool = True


@dataclass(frozen=True)
class Err(Generic[E]):
    error: E
    ok: bool = False


Result = Union[Ok[T], Err[PaymentError]]
