"""
Replay protection for chip counters.

Chip firmware increments a counter on every tap. A scan is fresh only if its
counter is strictly greater than the last accepted one; the check and the
advance happen together in the registry's conditional update, so two
concurrent scans presenting the same counter cannot both be accepted.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from .models import Chip
from .registry import ChipRegistry
from .security import parse_counter

logger = logging.getLogger(__name__)


class ReplayResult(str, Enum):
    ACCEPTED = "ACCEPTED"
    STALE = "STALE"         # presented <= stored
    RACE_LOST = "RACE_LOST" # passed the pre-check, lost the conditional update


@dataclass(frozen=True)
class ReplayDecision:
    result: ReplayResult
    presented: int
    stored: int

    def accepted(self) -> bool:
        return self.result == ReplayResult.ACCEPTED


class ReplayGuard:
    """Accept-and-advance for monotonic chip counters."""

    def __init__(self, registry: ChipRegistry):
        self._registry = registry

    @staticmethod
    def parse(raw_counter: Any) -> int:
        """Parse the presented counter. Raises CounterParseError."""
        return parse_counter(raw_counter)

    def check(self, chip: Chip, presented: int) -> Optional[ReplayDecision]:
        """STALE when presented is not newer than the counter read with the chip, else None."""
        if presented <= chip.counter:
            return ReplayDecision(ReplayResult.STALE, presented, chip.counter)
        return None

    def advance(self, chip: Chip, presented: int) -> ReplayDecision:
        """
        Persist presented as the chip's counter through the conditional update.

        RACE_LOST when another scan stored an equal or higher counter first;
        the stored counter is then left as it is.
        """
        if not self._registry.advance_counter(chip.id, presented):
            logger.warning("counter advance lost for chip %s at %d", chip.id, presented)
            return ReplayDecision(ReplayResult.RACE_LOST, presented, chip.counter)
        return ReplayDecision(ReplayResult.ACCEPTED, presented, chip.counter)

    def check_and_advance(self, chip: Chip, presented: int) -> ReplayDecision:
        """Accept the presented counter and persist it, or reject it as a replay."""
        return self.check(chip, presented) or self.advance(chip, presented)
