"""Prometheus counters for event matching."""

from prometheus_client import Counter

MATCH_OUTCOMES = Counter(
    "reconciler_match_outcomes",
    "Subscription match outcomes by event source",
    ["source", "outcome"],
)


def record_match_outcome(source: str, outcome: str) -> None:
    MATCH_OUTCOMES.labels(source=source, outcome=outcome).inc()


def match_outcome_counts() -> dict[str, dict[str, int]]:
    """Current counter values as ``{source: {outcome: count}}``."""
    counts: dict[str, dict[str, int]] = {}
    for metric in MATCH_OUTCOMES.collect():
        for sample in metric.samples:
            if not sample.name.endswith("_total"):
                continue
            counts.setdefault(sample.labels["source"], {})[sample.labels["outcome"]] = int(sample.value)
    return counts
