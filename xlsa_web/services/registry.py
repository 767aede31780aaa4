from __future__ import annotations

import inspect
import logging
import threading
from typing import Any, Callable, Mapping

from xlsa_web.domain.outcome import AppError, Err, Ok, Outcome

logger = logging.getLogger(__name__)


class StrategyRegistry:
    """
    Maps a discriminator string to a unit-of-work class.

    The registry is bound to one capability (e.g. "analyze" or "generate");
    registration checks that the class provides it. Registration is additive:
    there is no unregister, and readers always see a complete snapshot.
    """

    def __init__(self, capability: str, strategies: Mapping[str, Callable[..., Any]] | None = None):
        self.capability = capability
        self._lock = threading.Lock()
        self._strategies: Mapping[str, Callable[..., Any]] = {}
        for key, constructor in (strategies or {}).items():
            result = self.register(key, constructor)
            if result.is_err():
                raise ValueError(result.error.message)

    def register(self, key: str, constructor: Callable[..., Any]) -> Outcome[str]:
        key = (key or "").strip()
        if not key:
            return Err(AppError.invalid_strategy(key, "key is empty"))

        if not inspect.isclass(constructor):
            return Err(AppError.invalid_strategy(key, "constructor must be a class"))
        if inspect.isabstract(constructor):
            return Err(AppError.invalid_strategy(key, f"{constructor.__name__} is abstract"))
        if not callable(getattr(constructor, self.capability, None)):
            return Err(AppError.invalid_strategy(key, f"{constructor.__name__} does not implement {self.capability}()"))

        # copy-on-write: readers hold the old mapping until the swap
        with self._lock:
            updated = dict(self._strategies)
            updated[key] = constructor
            self._strategies = updated

        logger.debug("Registered %s strategy %r -> %s", self.capability, key, constructor.__name__)
        return Ok(key)

    def create(self, key: str, deps: Any = None) -> Outcome[Any]:
        constructor = self._strategies.get(key)
        if constructor is None:
            return Err(AppError.unknown_strategy(key))
        try:
            return Ok(constructor(deps))
        except Exception:
            logger.exception("Failed to construct %s strategy %r", self.capability, key)
            return Err(AppError.execution(f"Could not construct strategy {key}"))

    def available_keys(self) -> list[str]:
        return sorted(self._strategies)

    def __contains__(self, key: str) -> bool:
        return key in self._strategies
