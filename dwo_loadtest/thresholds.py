"""
Pass/fail thresholds evaluated against the aggregated metrics at run end
Expressions follow the k6 form: "<aggregation> <operator> <number>",
e.g. "p(95)<15000", "count<5", "rate>0.95", "value==0"
"""

import operator
import re
from dataclasses import dataclass
from typing import Dict, List, Optional

from .metrics import Counter, Gauge, MetricsAggregator, Rate, Trend

CONTROLLER_THRESHOLDS: Dict[str, List[str]] = {
    'checks': ['rate>0.95'],
    'devworkspace_create_duration': ['p(95)<15000'],
    'devworkspace_delete_duration': ['p(95)<10000'],
    'devworkspace_ready_duration': ['p(95)<60000'],
    'devworkspace_ready_failed': ['count<5'],
    'operator_cpu_violations': ['count==0'],
    'operator_mem_violations': ['count==0'],
    'operator_pod_restarts_total': ['value == 0'],
    'etcd_pod_restarts_total': ['value==0'],
}

WEBHOOK_THRESHOLDS: Dict[str, List[str]] = {
    'exec_unexpected_allowed_total': ['count==0'],
    'exec_unexpected_denied_total': ['count==0'],
    'invalid_mutating_allowed_total': ['count==0'],
}

_EXPRESSION = re.compile(
    r'^\s*(?P<agg>count|rate|value|avg|min|max|med|p\((?P<pct>\d+(?:\.\d+)?)\))'
    r'\s*(?P<op><=|>=|==|!=|<|>)\s*(?P<target>-?\d+(?:\.\d+)?)\s*$'
)

_OPERATORS = {
    '<': operator.lt,
    '<=': operator.le,
    '>': operator.gt,
    '>=': operator.ge,
    '==': operator.eq,
    '!=': operator.ne,
}


class ThresholdSyntaxError(ValueError):
    """Raised for a threshold expression that cannot be parsed"""


@dataclass
class Threshold:
    metric: str
    expression: str
    aggregation: str
    op: str
    target: float
    percentile: Optional[float] = None

    @classmethod
    def parse(cls, metric: str, expression: str) -> 'Threshold':
        match = _EXPRESSION.match(expression)
        if not match:
            raise ThresholdSyntaxError(f"Invalid threshold for {metric}: {expression!r}")
        aggregation = match.group('agg')
        pct = match.group('pct')
        return cls(
            metric=metric,
            expression=expression,
            aggregation='p' if pct else aggregation,
            op=match.group('op'),
            target=float(match.group('target')),
            percentile=float(pct) if pct else None,
        )


@dataclass
class ThresholdResult:
    metric: str
    expression: str
    observed: Optional[float]
    passed: bool

    def describe(self) -> str:
        observed = 'no data' if self.observed is None else f"{self.observed:g}"
        mark = '✓' if self.passed else '✗'
        return f"{mark} {self.metric}: {self.expression} (observed {observed})"


def _observe(threshold: Threshold, aggregator: MetricsAggregator) -> Optional[float]:
    """Return the aggregated value a threshold compares, or None when nothing was observed"""
    metric = aggregator.get(threshold.metric)
    agg = threshold.aggregation

    if metric is None:
        # an untouched counter still has a well defined count of zero
        return 0.0 if agg == 'count' else None

    if isinstance(metric, Counter):
        if agg == 'count':
            return metric.count
    elif isinstance(metric, Gauge):
        if agg == 'value':
            return metric.value
        if agg in ('min', 'max'):
            return getattr(metric, agg)
    elif isinstance(metric, Rate):
        if agg == 'rate':
            return metric.rate
    elif isinstance(metric, Trend):
        if agg == 'p':
            return metric.percentile(threshold.percentile)
        if agg == 'count':
            return float(metric.samples)
        summary = metric.summary()
        if agg in summary:
            return summary[agg]

    raise ThresholdSyntaxError(
        f"Aggregation {agg!r} is not supported for {metric.kind} metric {threshold.metric}")


def parse_thresholds(declared: Dict[str, List[str]]) -> List[Threshold]:
    return [Threshold.parse(metric, expr) for metric, exprs in declared.items() for expr in exprs]


def evaluate_thresholds(declared: Dict[str, List[str]],
                        aggregator: MetricsAggregator) -> List[ThresholdResult]:
    """Compare every declared threshold against the aggregated metrics"""
    results = []
    for threshold in parse_thresholds(declared):
        observed = _observe(threshold, aggregator)
        if observed is None:
            # nothing observed, nothing breached
            passed = True
        else:
            passed = _OPERATORS[threshold.op](observed, threshold.target)
        results.append(ThresholdResult(threshold.metric, threshold.expression, observed, passed))
    return results


def thresholds_passed(results: List[ThresholdResult]) -> bool:
    return all(r.passed for r in results)
