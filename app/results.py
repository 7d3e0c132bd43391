"""Small result types threaded through the content resolution pipeline."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar, Union

from .errors import MediaHubError

T = TypeVar("T")


@dataclass(slots=True, frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(slots=True, frozen=True)
class Degraded(Generic[T]):
    """A usable value served after a refresh failed."""

    value: T
    reason: str


@dataclass(slots=True, frozen=True)
class Err:
    error: MediaHubError

    @property
    def kind(self) -> str:
        return self.error.kind


Result = Union[Ok[T], Degraded[T], Err]
