"""Common contract for pipeline operations."""

from __future__ import annotations

import abc
import inspect
from typing import Any, Generic, TypeVar

import httpx
from pydantic import BaseModel, ConfigDict, Field

from phaseforge.domain.context import GenerationContext
from phaseforge.inference import InferenceFn, execute_inference

InputT = TypeVar("InputT")
OutputT = TypeVar("OutputT")


class OperationOptions(BaseModel):
    """Collaborators shared by every operation of a cycle.

    ``inference`` defaults to the real model boundary; tests pass a fake.
    ``agent`` is the orchestrating agent (conversation tools call into it).
    ``http_client`` is used for image URL checks when given.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    context: GenerationContext = Field(default_factory=GenerationContext)
    inference: InferenceFn = execute_inference
    agent: Any = None
    http_client: httpx.AsyncClient | None = None

    def with_context(self, context: GenerationContext) -> "OperationOptions":
        return self.model_copy(update={"context": context})


class AgentOperation(abc.ABC, Generic[InputT, OutputT]):
    """One pipeline step: typed inputs + shared options in, typed output out."""

    @abc.abstractmethod
    async def execute(self, inputs: InputT, options: OperationOptions) -> OutputT:
        raise NotImplementedError


async def maybe_await(value: Any) -> Any:
    """Await *value* if it is awaitable (host callbacks may be sync or async)."""
    if inspect.isawaitable(value):
        return await value
    return value
