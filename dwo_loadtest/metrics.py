"""
Run-wide metric accumulators
One MetricsAggregator is built per run and handed to every iteration
"""

import threading
from typing import Dict, List, Optional

import pandas as pd

CHECKS_METRIC = 'checks'


class Counter:
    """Additive counter; negative deltas are allowed for in-flight tallies"""
    kind = 'counter'

    def __init__(self, name: str):
        self.name = name
        self.count = 0.0
        self.samples = 0

    def add(self, value: float = 1):
        self.count += value
        self.samples += 1

    def summary(self) -> Dict[str, float]:
        return {'count': self.count}


class Gauge:
    """Last-value gauge"""
    kind = 'gauge'

    def __init__(self, name: str):
        self.name = name
        self.value: Optional[float] = None
        self.min: Optional[float] = None
        self.max: Optional[float] = None
        self.samples = 0

    def set(self, value: float):
        self.value = value
        self.min = value if self.min is None else min(self.min, value)
        self.max = value if self.max is None else max(self.max, value)
        self.samples += 1

    def summary(self) -> Dict[str, Optional[float]]:
        return {'value': self.value, 'min': self.min, 'max': self.max}


class Trend:
    """Distribution of observed values"""
    kind = 'trend'

    def __init__(self, name: str):
        self.name = name
        self.values: List[float] = []

    def add(self, value: float):
        self.values.append(float(value))

    @property
    def samples(self) -> int:
        return len(self.values)

    def percentile(self, pct: float) -> Optional[float]:
        if not self.values:
            return None
        return float(pd.Series(self.values).quantile(pct / 100.0))

    def summary(self) -> Dict[str, Optional[float]]:
        if not self.values:
            return {'count': 0, 'avg': None, 'min': None, 'med': None, 'max': None, 'p(90)': None, 'p(95)': None}
        series = pd.Series(self.values)
        return {
            'count': int(series.count()),
            'avg': float(series.mean()),
            'min': float(series.min()),
            'med': float(series.median()),
            'max': float(series.max()),
            'p(90)': float(series.quantile(0.90)),
            'p(95)': float(series.quantile(0.95)),
        }


class Rate:
    """Share of truthy observations"""
    kind = 'rate'

    def __init__(self, name: str):
        self.name = name
        self.passes = 0
        self.fails = 0

    def add(self, passed: bool):
        if passed:
            self.passes += 1
        else:
            self.fails += 1

    @property
    def samples(self) -> int:
        return self.passes + self.fails

    @property
    def rate(self) -> Optional[float]:
        total = self.passes + self.fails
        return self.passes / total if total else None

    def summary(self) -> Dict[str, Optional[float]]:
        return {'rate': self.rate, 'passes': self.passes, 'fails': self.fails}


class MetricsAggregator:
    """Thread-safe registry of named counters, gauges, trends and rates"""

    def __init__(self):
        self._lock = threading.Lock()
        self._metrics: Dict[str, object] = {}
        self._checks: Dict[str, Rate] = {}

    def _get(self, name: str, factory):
        metric = self._metrics.get(name)
        if metric is None:
            metric = factory(name)
            self._metrics[name] = metric
        elif not isinstance(metric, factory):
            raise TypeError(f"Metric {name} is a {metric.kind}, not a {factory.kind}")
        return metric

    def register(self, name: str, factory):
        """Declare a metric up front so it shows in the summary even when untouched"""
        with self._lock:
            return self._get(name, factory)

    def increment(self, name: str, value: float = 1):
        with self._lock:
            self._get(name, Counter).add(value)

    def observe(self, name: str, value: float):
        with self._lock:
            self._get(name, Trend).add(value)

    def set_gauge(self, name: str, value: float):
        with self._lock:
            self._get(name, Gauge).set(value)

    def add_rate(self, name: str, passed: bool):
        with self._lock:
            self._get(name, Rate).add(passed)

    def check(self, name: str, passed: bool) -> bool:
        """Record a named check; all checks also feed the overall 'checks' rate"""
        with self._lock:
            self._get(CHECKS_METRIC, Rate).add(passed)
            rate = self._checks.get(name)
            if rate is None:
                rate = self._checks[name] = Rate(name)
            rate.add(passed)
        return passed

    def get(self, name: str):
        with self._lock:
            return self._metrics.get(name)

    def counter_value(self, name: str) -> float:
        metric = self.get(name)
        return metric.count if isinstance(metric, Counter) else 0

    def trend_values(self, name: str) -> List[float]:
        metric = self.get(name)
        return list(metric.values) if isinstance(metric, Trend) else []

    def gauge_value(self, name: str) -> Optional[float]:
        metric = self.get(name)
        return metric.value if isinstance(metric, Gauge) else None

    def metric_names(self) -> List[str]:
        with self._lock:
            return sorted(self._metrics)

    def checks(self) -> Dict[str, Dict[str, Optional[float]]]:
        with self._lock:
            return {name: rate.summary() for name, rate in self._checks.items()}

    def snapshot(self) -> Dict[str, Dict[str, object]]:
        """Summaries of every metric, keyed by name"""
        with self._lock:
            return {m.name: {'type': m.kind, **m.summary()} for m in self._metrics.values()}
