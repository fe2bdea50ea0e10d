import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)

Candidate = Tuple[str, Callable[[], Awaitable[Any]]]


@dataclass
class Outcome:
    """Result of a best-effort call: `degraded` marks a default standing in for a failed fetch."""
    value: Any
    degraded: bool = False
    error: Optional[str] = None

    @classmethod
    def fallback(cls, value: Any, error: Exception) -> 'Outcome':
        return cls(value=value, degraded=True, error=str(error) or error.__class__.__name__)


@dataclass
class Attempt:
    label: str
    value: Any


@dataclass
class ChainResult:
    winner: Optional[Attempt] = None
    errors: Dict[str, Exception] = field(default_factory=dict)
    # every candidate that returned normally, accepted or not
    responses: List[Attempt] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.winner is not None

    @property
    def value(self) -> Any:
        return self.winner.value if self.winner else None

    @property
    def nobody_answered(self) -> bool:
        return self.winner is None and not self.responses and bool(self.errors)


async def first_successful(candidates: Iterable[Candidate],
                           accept: Callable[[Any], bool] = bool,
                           what: str = "operation") -> ChainResult:
    """
    Runs candidates strictly in order and stops at the first one whose result passes `accept`.
    Exceptions are recorded per candidate and never propagate.
    """
    result = ChainResult()
    for label, factory in candidates:
        try:
            value = await factory()
        except Exception as e:
            logger.info(f"↪️ {what}: candidate '{label}' failed: {e}")
            result.errors[label] = e
            continue
        attempt = Attempt(label, value)
        result.responses.append(attempt)
        if accept(value):
            logger.debug(f"✅ {what}: candidate '{label}' accepted")
            result.winner = attempt
            return result
        logger.debug(f"{what}: candidate '{label}' answered without a usable result")
    return result
