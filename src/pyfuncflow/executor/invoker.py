"""
Function Invocation Service interface.

The engine treats function execution as a black box:

    invoke(function_id, payload, timeout) -> InvocationResult | InvocationError

FunctionInvoker is the seam; LocalFunctionInvoker is an in-process
implementation backed by a registry of Python callables, used for tests
and embedded deployments.

Design Pattern: Registry
LocalFunctionInvoker maps function ids to callables the way a worker
maps flow type names to executors.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from pyfuncflow.core.errors import InvocationError, WorkflowError
from pyfuncflow.models.execution import new_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InvocationResult:
    """Successful invocation.

    Attributes:
        output: JSON-compatible result
        invocation_id: Identifier assigned by the invocation service
    """

    output: Any
    invocation_id: str


class FunctionInvoker(ABC):
    """Consumed collaborator that executes a function by id."""

    @abstractmethod
    async def invoke(
        self, function_id: str, payload: Any, timeout: float | None = None
    ) -> InvocationResult:
        """
        Execute ``function_id`` against ``payload``.

        Implementations should honour ``timeout`` themselves where they
        can; the engine also bounds the call and cancels it on expiry.

        Raises:
            InvocationError: The function failed; its error_kind is what
                retry and catch policies match against
        """
        pass


class LocalFunctionInvoker(FunctionInvoker):
    """Registry of in-process functions.

    Functions take the payload and return a JSON-compatible result. They
    may be sync or async. Raising InvocationError sets an explicit error
    kind; any other exception becomes an InvocationError whose kind is
    the exception class name.

    Example:
        invoker = LocalFunctionInvoker()

        @invoker.function("fn-charge")
        async def charge(payload):
            return {"charged": payload["amount"]}

        invoker.register("fn-double", lambda payload: payload * 2)
    """

    def __init__(self):
        self._functions: dict[str, Callable[[Any], Any]] = {}

    def register(self, function_id: str, func: Callable[[Any], Any]) -> None:
        """Register ``func`` under ``function_id`` (replacing any previous one)."""
        logger.debug(f"Registered function: {function_id}")
        self._functions[function_id] = func

    def function(self, function_id: str) -> Callable[[Callable], Callable]:
        """Decorator form of register()."""

        def decorator(func: Callable) -> Callable:
            self.register(function_id, func)
            return func

        return decorator

    def __contains__(self, function_id: str) -> bool:
        return function_id in self._functions

    def __len__(self) -> int:
        return len(self._functions)

    async def invoke(
        self, function_id: str, payload: Any, timeout: float | None = None
    ) -> InvocationResult:
        func = self._functions.get(function_id)
        if func is None:
            raise InvocationError(
                f"function {function_id!r} is not registered",
                error_kind="States.FunctionNotFound",
            )

        invocation_id = new_id()
        try:
            if inspect.iscoroutinefunction(func):
                output = await func(payload)
            else:
                output = await asyncio.to_thread(func, payload)
                if inspect.isawaitable(output):
                    output = await output
        except WorkflowError as e:
            if isinstance(e, InvocationError) and e.invocation_id is None:
                e.invocation_id = invocation_id
            raise
        except Exception as e:
            raise InvocationError(
                str(e), error_kind=type(e).__name__, invocation_id=invocation_id
            ) from e
        return InvocationResult(output=output, invocation_id=invocation_id)


__all__ = ["FunctionInvoker", "LocalFunctionInvoker", "InvocationResult"]
