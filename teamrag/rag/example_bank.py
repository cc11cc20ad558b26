"""Learning Example Bank

Per-domain, append-only logs of labeled interactions. Successful examples are
matched against new queries and fed back into prompts as worked patterns.
"""

from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

import structlog

from teamrag.rag.log_storage import AppendOnlyLog, InMemoryLog
from teamrag.rag.models import Domain, LearningExample, Outcome

logger = structlog.get_logger(__name__)

# Domain vocabularies; a query and an example match when they share one.
DOMAIN_KEYWORDS: Dict[Domain, List[str]] = {
    Domain.CHART: ["chart", "graph", "pie", "bar", "line", "deals", "contacts", "stage", "status"],
    Domain.ANALYSIS: ["analyze", "which", "most", "pipeline", "sales", "account"],
    Domain.CRM: ["update", "create", "contact", "email", "company", "phone"],
}

PATTERN_HEADINGS: Dict[Domain, str] = {
    Domain.GENERAL: "successful user interactions",
    Domain.CHART: "successful chart creation patterns",
    Domain.ANALYSIS: "successful analysis patterns",
    Domain.CRM: "successful CRM operation patterns",
    Domain.CONVERSATION: "successful conversation patterns",
}

LogFactory = Callable[[Domain], AppendOnlyLog[LearningExample]]


def significant_words(text: str) -> List[str]:
    return [word for word in text.lower().split() if len(word) > 2]


class ExampleBank:
    """One independent append-only example log per domain."""

    def __init__(self, log_factory: Optional[LogFactory] = None):
        """Initialize the bank.

        Args:
            log_factory: Builds the log for a domain; in-memory logs by default
        """
        factory = log_factory or (lambda domain: InMemoryLog())
        self.logs: Dict[Domain, AppendOnlyLog[LearningExample]] = {
            domain: factory(domain) for domain in Domain
        }

    async def add_example(self, example: LearningExample) -> None:
        """Append an example to its domain's log."""
        await self.logs[example.domain].append(example)
        logger.debug(
            "Learning example logged",
            domain=example.domain.value,
            outcome=example.outcome.value
        )

    async def log_example(
        self,
        domain: Domain,
        query: str,
        success: bool,
        confidence: float = 1.0,
        note: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> LearningExample:
        """Build and append an example."""
        example = LearningExample(
            query=query,
            domain=domain,
            success=success,
            confidence=confidence,
            note=note,
            details=details or {}
        )
        await self.add_example(example)
        return example

    async def export_examples(self, domain: Optional[Domain] = None) -> List[LearningExample]:
        """Export examples in insertion order.

        Without a domain, every domain's examples are returned grouped by
        domain in declaration order.
        """
        if domain is not None:
            return await self.logs[domain].snapshot()

        examples: List[LearningExample] = []
        for log_domain in Domain:
            examples.extend(await self.logs[log_domain].snapshot())
        return examples

    async def import_examples(self, examples: Iterable[LearningExample]) -> int:
        """Restore exported examples, appending each to its domain's log in order.

        Returns:
            Number of examples imported
        """
        imported = 0
        for example in examples:
            await self.logs[example.domain].append(example)
            imported += 1
        logger.info("Learning examples imported", imported=imported)
        return imported

    async def stats(self) -> Dict[str, Any]:
        """Example counts per domain and per outcome."""
        by_domain: Dict[str, int] = {}
        by_outcome: Dict[str, int] = {outcome.value: 0 for outcome in Outcome}
        for domain in Domain:
            examples = await self.logs[domain].snapshot()
            by_domain[domain.value] = len(examples)
            for example in examples:
                by_outcome[example.outcome.value] += 1

        return {
            "total": sum(by_domain.values()),
            "by_domain": by_domain,
            "by_outcome": by_outcome,
        }

    async def find_relevant_examples(
        self,
        domain: Domain,
        query: str,
        limit: int = 2
    ) -> List[LearningExample]:
        """Successful examples of a domain that share vocabulary with the query.

        Domains with a keyword list match on shared keywords; the others match
        on shared words longer than two characters. Results are ordered by the
        number of matches, then by insertion order.
        """
        examples = await self.logs[domain].snapshot()
        query_lower = query.lower()
        keywords = DOMAIN_KEYWORDS.get(domain)
        if keywords is not None:
            terms = [k for k in keywords if k in query_lower]
        else:
            terms = significant_words(query)
        if not terms or limit <= 0:
            return []

        scored = []
        for position, example in enumerate(examples):
            if example.outcome != Outcome.SUCCESSFUL:
                continue
            example_lower = example.query.lower()
            matches = sum(1 for term in terms if term in example_lower)
            if matches:
                scored.append((-matches, position, example))

        scored.sort(key=lambda item: (item[0], item[1]))
        return [example for _, _, example in scored[:limit]]

    async def enhance_prompt(self, domain: Domain, prompt: str, query: str) -> str:
        """Append matching successful patterns to a prompt.

        The prompt is returned unchanged when nothing matches.
        """
        examples = await self.find_relevant_examples(domain, query)
        if not examples:
            return prompt

        lines = [format_example(example) for example in examples]
        return (
            f"{prompt}\n\n"
            f"Based on these {PATTERN_HEADINGS[domain]}:\n"
            + "\n".join(lines)
            + f"\n\nCurrent user query: \"{query}\""
        )

    async def prune(self, older_than: datetime) -> int:
        """Drop examples recorded before ``older_than`` from every domain."""
        removed = 0
        for domain in Domain:
            removed += await self.logs[domain].prune(older_than)
        logger.info("Learning examples pruned", removed=removed)
        return removed


def format_example(example: LearningExample) -> str:
    line = f"User: \"{example.query}\""
    if example.details:
        details = ", ".join(f"{key}: {value}" for key, value in example.details.items())
        line += f" -> {details}"
    return line
