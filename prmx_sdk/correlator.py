"""
Attribution of block events to one submission.
"""
import logging
from typing import Callable, Iterable, List, Optional

from ._rate_limited_log import rate_limited_log
from .exceptions import PrmxError
from .models import BlockEventLog, CorrelatedEventSet, CorrelationStatus, EventRecord
from .node.base import NodeConnection

logger = logging.getLogger(__name__)

Disambiguator = Callable[[List[EventRecord]], bool]


def matches_candidate(event: EventRecord, candidates: Iterable[str]) -> bool:
    """True if the event's module (or ``Module.Event``) is a candidate."""
    qualified = f"{event.module}.{event.event}"
    return any(c == event.module or c == qualified for c in candidates)


class EventCorrelator:
    """
    Isolates the events caused by one submission inside a block.

    The live status callback can report a stale or missing extrinsic index
    when the block also carries unsigned system extrinsics, so the block's
    event log is always re-read and scanned for the first extrinsic that
    touched one of the candidate modules. When the scan finds nothing the
    live events are returned tagged ``UNCORRELATED_FALLBACK``.

    If several extrinsics match, the live index wins when it is one of them.
    Otherwise an optional caller-supplied disambiguator picks among them, and
    failing that the first match is used and the result is flagged
    ``ambiguous``.
    """

    def __init__(self, node: NodeConnection, logger: Optional[logging.Logger] = None):
        self.node = node
        self.logger = logger or logging.getLogger(__name__)

    async def correlate(
        self,
        block_hash: str,
        live_events: List[EventRecord],
        candidate_modules: Iterable[str],
        live_index: Optional[int] = None,
        disambiguator: Optional[Disambiguator] = None
    ) -> CorrelatedEventSet:
        """
        Find the events belonging to a submission.

        Args:
            block_hash: Block the submission was included in
            live_events: Events reported by the live status stream
            candidate_modules: Module names (or ``Module.Event``) the call
                could have touched
            live_index: Extrinsic index reported by the live stream, if any
            disambiguator: Predicate over one extrinsic's events, used when
                more than one extrinsic matches

        Returns:
            CorrelatedEventSet, CORRELATED or UNCORRELATED_FALLBACK
        """
        candidates = tuple(candidate_modules)
        try:
            log = await self.node.get_block_events(block_hash)
        except PrmxError as e:
            return self._fallback(block_hash, live_events, live_index, f"event log unavailable: {e}")

        matches = self.matching_indices(log, candidates)
        if not matches:
            return self._fallback(block_hash, live_events, live_index,
                                  f"no extrinsic touched {', '.join(candidates)}")

        chosen, ambiguous = self._choose(log, matches, live_index, disambiguator)
        if ambiguous:
            self.logger.warning(
                f"Block {block_hash}: extrinsics {matches} all match {candidates}; using {chosen}"
            )
        elif live_index is not None and live_index != chosen:
            self.logger.debug(f"Block {block_hash}: live index {live_index} corrected to {chosen}")

        return CorrelatedEventSet(
            status=CorrelationStatus.CORRELATED,
            phase_index=chosen,
            events=log.events_for(chosen),
            ambiguous=ambiguous
        )

    @staticmethod
    def matching_indices(log: BlockEventLog, candidates: Iterable[str]) -> List[int]:
        """Extrinsic indices, in log order, that emitted a candidate event."""
        candidates = tuple(candidates)
        return [
            index for index in log.phase_indices()
            if any(matches_candidate(e, candidates) for e in log.events_for(index))
        ]

    def _choose(self, log: BlockEventLog, matches: List[int], live_index: Optional[int],
                disambiguator: Optional[Disambiguator]):
        if len(matches) == 1:
            return matches[0], False
        if live_index in matches:
            return live_index, False
        if disambiguator is not None:
            accepted = [index for index in matches if disambiguator(log.events_for(index))]
            if accepted:
                return accepted[0], len(accepted) > 1
        return matches[0], True

    def _fallback(self, block_hash: str, live_events: List[EventRecord],
                  live_index: Optional[int], reason: str) -> CorrelatedEventSet:
        rate_limited_log(
            f"Events for block {block_hash} are unverified: {reason}",
            level="warning",
            logger_instance=self.logger
        )
        return CorrelatedEventSet(
            status=CorrelationStatus.UNCORRELATED_FALLBACK,
            phase_index=live_index,
            events=list(live_events)
        )
