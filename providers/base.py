"""
Capability providers — named objects exposing async operations that plan
steps call into.

The executor only relies on the operation names and argument shapes below;
how a provider does its work is its own business. Every operation accepts a
keyword ``token`` (a CancellationToken) that it may poll to stop early.

    analyze(instruction, parameters, *, token)
    generate_code(instruction, parameters, *, token)
    run_tests(parameters, *, token)
    commit_changes(change, *, token)          change = {message, files, branch}
    setup_monitoring(workflow_id, parameters, *, token)
    deploy(parameters, *, token)
    generate_plan(prompt, options)            planner only
"""

from __future__ import annotations

import asyncio
import logging
from functools import partial
from typing import Any, Callable

from errors import ProviderNotFoundError

log = logging.getLogger(__name__)


class CapabilityProvider:
    """Base class with no-op lifecycle hooks."""

    name: str = "provider"

    async def initialize(self) -> None:
        log.info("Provider %s initialized", self.name)

    async def cleanup(self) -> None:
        log.info("Provider %s cleaned up", self.name)

    def supports(self, operation: str) -> bool:
        return callable(getattr(self, operation, None))

    async def _run_blocking(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run blocking work (SDK calls, subprocesses) on the default thread pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(fn, *args, **kwargs))


class ProviderRegistry:
    """Capability providers keyed by name, built once at process start."""

    def __init__(self, providers: dict[str, Any] | None = None):
        self._providers: dict[str, Any] = dict(providers or {})

    def register(self, provider: Any, name: str | None = None) -> None:
        key = name or getattr(provider, "name", None)
        if not key:
            raise ValueError("Provider needs a name")
        if key in self._providers:
            log.warning("Replacing capability provider %s", key)
        self._providers[key] = provider

    def get(self, name: str) -> Any:
        try:
            return self._providers[name]
        except KeyError:
            raise ProviderNotFoundError(name) from None

    def has(self, name: str) -> bool:
        return name in self._providers

    def names(self) -> list[str]:
        return sorted(self._providers)

    async def initialize_all(self) -> None:
        await asyncio.gather(*(p.initialize() for p in self._providers.values()))
        log.info("Initialized %d capability providers: %s", len(self._providers), ", ".join(self.names()))

    async def cleanup_all(self) -> None:
        names = list(self._providers)
        results = await asyncio.gather(
            *(self._providers[n].cleanup() for n in names), return_exceptions=True,
        )
        for name, outcome in zip(names, results):
            if isinstance(outcome, BaseException):
                log.warning("Cleanup of provider %s failed: %s", name, outcome)
