"""Interaction Monitor

Records every retrieval/generation attempt and derives success-rate,
confidence and improvement metrics from the interaction log. Metrics are
recomputed from a snapshot of the log on every call and never stored.
"""

from datetime import datetime
from typing import Dict, List, Optional, TYPE_CHECKING

import structlog

from teamrag.config.settings import get_settings
from teamrag.core.metrics import record_interaction_metrics, update_success_rate
from teamrag.rag.log_storage import AppendOnlyLog, InMemoryLog
from teamrag.rag.models import (
    Domain,
    EvaluationReport,
    Interaction,
    MetricsSnapshot,
    WindowStats,
)

if TYPE_CHECKING:
    from teamrag.rag.example_bank import ExampleBank

logger = structlog.get_logger(__name__)


def success_rate(interactions: List[Interaction]) -> float:
    """Fraction of successful interactions; 0.0 for an empty list."""
    if not interactions:
        return 0.0
    return sum(1 for i in interactions if i.success) / len(interactions)


def average_confidence(interactions: List[Interaction]) -> float:
    if not interactions:
        return 0.0
    return sum(i.confidence for i in interactions) / len(interactions)


def window_stats(interactions: List[Interaction]) -> WindowStats:
    return WindowStats(
        interactions=len(interactions),
        success_rate=success_rate(interactions),
        average_confidence=average_confidence(interactions)
    )


class InteractionMonitor:
    """Append-only interaction log with derived metrics."""

    def __init__(
        self,
        log: Optional[AppendOnlyLog[Interaction]] = None,
        example_bank: Optional["ExampleBank"] = None,
        improvement_window: Optional[int] = None
    ):
        """Initialize the monitor.

        Args:
            log: Interaction storage; a fresh in-memory log by default
            example_bank: Bank whose size is reported as learning progress
            improvement_window: Interactions per window when computing improvement
        """
        self.log = log if log is not None else InMemoryLog()
        self.example_bank = example_bank
        self.improvement_window = improvement_window or get_settings().monitoring.improvement_window

    async def record(self, interaction: Interaction) -> None:
        """Append an interaction to the log."""
        await self.log.append(interaction)
        record_interaction_metrics(interaction.domain.value, interaction.success)
        logger.debug(
            "Interaction recorded",
            domain=interaction.domain.value,
            success=interaction.success,
            confidence=interaction.confidence
        )

    async def record_outcome(
        self,
        domain: Domain,
        success: bool,
        confidence: float,
        query: str = "",
        response_time_ms: Optional[float] = None
    ) -> Interaction:
        """Build and record an interaction."""
        interaction = Interaction(
            query=query,
            domain=domain,
            success=success,
            confidence=confidence,
            response_time_ms=response_time_ms
        )
        await self.record(interaction)
        return interaction

    async def current_metrics(self, since: Optional[datetime] = None) -> MetricsSnapshot:
        """Recompute metrics from the log.

        Args:
            since: Restrict the confidence average to interactions at or after this time

        Returns:
            Metrics snapshot
        """
        interactions = await self.log.snapshot()
        successful = sum(1 for i in interactions if i.success)

        confidence_pool = interactions
        if since is not None:
            confidence_pool = [i for i in interactions if i.timestamp >= since]

        breakdown: Dict[str, int] = {domain.value: 0 for domain in Domain}
        for interaction in interactions:
            breakdown[interaction.domain.value] += 1

        examples_added = 0
        patterns_learned = 0
        if self.example_bank is not None:
            stats = await self.example_bank.stats()
            examples_added = stats["total"]
            patterns_learned = stats["by_outcome"]["successful"]

        snapshot = MetricsSnapshot(
            total_interactions=len(interactions),
            successful_interactions=successful,
            failed_interactions=len(interactions) - successful,
            success_rate=success_rate(interactions),
            average_confidence=average_confidence(confidence_pool),
            domain_breakdown=breakdown,
            examples_added=examples_added,
            patterns_learned=patterns_learned,
            improvement=self._improvement(interactions, self.improvement_window)
        )
        update_success_rate(snapshot.success_rate)
        return snapshot

    async def evaluation_report(self, window: Optional[int] = None) -> EvaluationReport:
        """Compare the most recent window of interactions with the one before it."""
        window = window or get_settings().monitoring.evaluation_window
        interactions = await self.log.snapshot()
        recent = interactions[-window:]
        baseline = interactions[-2 * window:-window] if len(interactions) > window else []

        recent_stats = window_stats(recent)
        baseline_stats = window_stats(baseline)
        return EvaluationReport(
            window=window,
            baseline=baseline_stats,
            recent=recent_stats,
            success_rate_improvement=(recent_stats.success_rate - baseline_stats.success_rate) if baseline else 0.0,
            confidence_improvement=(recent_stats.average_confidence - baseline_stats.average_confidence) if baseline else 0.0
        )

    async def export_interactions(self) -> List[Interaction]:
        """All recorded interactions in insertion order."""
        return await self.log.snapshot()

    async def prune(self, older_than: datetime) -> int:
        """Drop interactions recorded before ``older_than``."""
        removed = await self.log.prune(older_than)
        logger.info("Interactions pruned", removed=removed)
        return removed

    @staticmethod
    def _improvement(interactions: List[Interaction], window: int) -> float:
        if len(interactions) <= window:
            return 0.0
        recent = interactions[-window:]
        baseline = interactions[-2 * window:-window]
        return success_rate(recent) - success_rate(baseline)
