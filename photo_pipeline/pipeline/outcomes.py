"""
Best-effort stage outcomes

Enrichment and background removal never fail a job. Their adapters are
wrapped so the orchestrator receives Ok(value) or Degraded(error) and
records the latter instead of raising.
"""

from dataclasses import dataclass
from typing import Awaitable, Generic, TypeVar, Union

from photo_pipeline.core.exceptions import PipelineBaseException

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Degraded:
    error: PipelineBaseException


Outcome = Union[Ok[T], Degraded]


async def best_effort(call: Awaitable[T], *recoverable: type) -> "Outcome[T]":
    """Await call; the listed exception types become Degraded, anything else propagates."""
    try:
        return Ok(await call)
    except recoverable as e:
        return Degraded(e)
