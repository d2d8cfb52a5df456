"""
Run summary: console table, JSON summary and CSV results row
"""

import json
import os
from datetime import datetime
from typing import Any, Dict, List, Optional

import pandas as pd

from .console import Colors
from .metrics import MetricsAggregator
from .thresholds import ThresholdResult

CONTROLLER_SUMMARY_METRICS = [
    'devworkspace_create_count',
    'devworkspace_create_duration',
    'devworkspace_delete_duration',
    'devworkspace_ready_duration',
    'devworkspace_ready',
    'devworkspace_ready_failed',
    'devworkspace_starting',
    'operator_cpu_violations',
    'operator_mem_violations',
    'average_operator_cpu',
    'average_operator_memory',
    'operator_pod_restarts_total',
    'etcd_pod_restarts_total',
    'average_etcd_cpu',
    'average_etcd_memory',
    'checks',
]

WEBHOOK_SUMMARY_METRICS = [
    'exec_allow_rate',
    'exec_deny_rate',
    'create_latency_ms',
    'exec_latency_ms',
    'average_webhook_cpu_millicores',
    'average_webhook_memory_mb',
    'mutating_latency_ms',
    'invalid_mutating_denied_total',
    'invalid_mutating_allowed_total',
    'exec_allowed_total',
    'exec_denied_total',
    'exec_unexpected_allowed_total',
    'exec_unexpected_denied_total',
    'checks',
]

CSV_COLUMNS = [
    'DevWorkspaces Created',
    'DevWorkspace Ready',
    'Ready Failed (%)',
    'Average CPU (milliCPU)',
    'Average Memory (MiB)',
    'Create Duration (Avg ms)',
    'Ready Duration (Avg ms)',
    'CPU Violations',
    'Memory Violations',
    'Average Etcd CPU (milliCPU)',
    'Average Etcd Memory (MiB)',
    'Namespace',
]

TABLE_COLUMNS = ['metric', 'type', 'count', 'avg', 'min', 'med', 'max', 'p(90)', 'p(95)', 'value', 'rate']


def build_summary_frame(aggregator: MetricsAggregator, allowed: Optional[List[str]] = None) -> pd.DataFrame:
    """One row per metric, restricted to the allowed names when given"""
    snapshot = aggregator.snapshot()
    rows = []
    for name, summary in snapshot.items():
        if allowed is not None and name not in allowed:
            continue
        rows.append({'metric': name, **summary})
    df = pd.DataFrame(rows, columns=TABLE_COLUMNS)
    if allowed is not None and not df.empty:
        order = {name: i for i, name in enumerate(allowed)}
        df = df.sort_values('metric', key=lambda s: s.map(order)).reset_index(drop=True)
    return df


def _fmt(value: Any) -> str:
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return ''
    if isinstance(value, float):
        return f"{value:.2f}".rstrip('0').rstrip('.')
    return str(value)


def format_text_summary(df: pd.DataFrame, thresholds: List[ThresholdResult], checks: Dict[str, Dict],
                        colors: bool = True) -> str:
    """Human readable summary of metrics, checks and thresholds"""
    green = Colors.GREEN if colors else ''
    red = Colors.RED if colors else ''
    cyan = Colors.CYAN if colors else ''
    yellow = Colors.YELLOW if colors else ''
    nc = Colors.NC if colors else ''

    breached = {r.metric for r in thresholds if not r.passed}
    lines = [f"{cyan}{'=' * 80}{nc}", f"{cyan}DevWorkspace Operator Load Test Summary{nc}", f"{cyan}{'=' * 80}{nc}"]

    lines.append(f"\n{yellow}Metrics:{nc}")
    for row in df.to_dict('records'):
        mark = f"{red}✗{nc}" if row['metric'] in breached else f"{green}✓{nc}"
        fields = [f"{key}={_fmt(row[key])}" for key in TABLE_COLUMNS[2:] if _fmt(row.get(key)) != '']
        lines.append(f"  {mark} {row['metric']:<36} {' '.join(fields)}")

    if checks:
        lines.append(f"\n{yellow}Checks:{nc}")
        for name, summary in sorted(checks.items()):
            color = green if not summary['fails'] else red
            lines.append(f"  {color}{name}{nc}: {summary['passes']} passed, {summary['fails']} failed")

    if thresholds:
        lines.append(f"\n{yellow}Thresholds:{nc}")
        for result in thresholds:
            color = green if result.passed else red
            lines.append(f"  {color}{result.describe()}{nc}")

    lines.append(f"{cyan}{'=' * 80}{nc}")
    return '\n'.join(lines)


def write_json_summary(path: str, df: pd.DataFrame, thresholds: List[ThresholdResult],
                       checks: Dict[str, Dict], passed: bool, extra: Optional[Dict[str, Any]] = None):
    """Machine-readable summary of the run"""
    records = df.astype(object).where(pd.notna(df), None).to_dict('records')
    metrics = {}
    for row in records:
        name = row.pop('metric')
        metrics[name] = {k: v for k, v in row.items() if v is not None}
    payload = {
        'timestamp': datetime.now().isoformat(),
        'passed': passed,
        'metrics': metrics,
        'checks': checks,
        'thresholds': [
            {'metric': r.metric, 'expression': r.expression, 'observed': r.observed, 'passed': r.passed}
            for r in thresholds
        ],
    }
    if extra:
        payload.update(extra)
    with open(path, 'w') as f:
        json.dump(payload, f, indent=2, default=str)


def _avg(aggregator: MetricsAggregator, name: str) -> float:
    values = aggregator.trend_values(name)
    return round(float(pd.Series(values).mean()), 2) if values else 0


def csv_row(aggregator: MetricsAggregator, namespace_mode: str) -> Dict[str, Any]:
    """Flatten the controller run into one results row"""
    created = aggregator.counter_value('devworkspace_create_count')
    failed = aggregator.counter_value('devworkspace_ready_failed')
    failed_pct = (failed / created * 100) if created > 0 else 0.0
    return {
        'DevWorkspaces Created': int(created),
        'DevWorkspace Ready': int(aggregator.counter_value('devworkspace_ready')),
        'Ready Failed (%)': f"{failed_pct:.2f}%",
        'Average CPU (milliCPU)': _avg(aggregator, 'average_operator_cpu'),
        'Average Memory (MiB)': _avg(aggregator, 'average_operator_memory'),
        'Create Duration (Avg ms)': _avg(aggregator, 'devworkspace_create_duration'),
        'Ready Duration (Avg ms)': _avg(aggregator, 'devworkspace_ready_duration'),
        'CPU Violations': int(aggregator.counter_value('operator_cpu_violations')),
        'Memory Violations': int(aggregator.counter_value('operator_mem_violations')),
        'Average Etcd CPU (milliCPU)': _avg(aggregator, 'average_etcd_cpu'),
        'Average Etcd Memory (MiB)': _avg(aggregator, 'average_etcd_memory'),
        'Namespace': namespace_mode,
    }


def append_csv_row(path: str, row: Dict[str, Any]):
    """Append a results row, writing the header when the file is new"""
    df = pd.DataFrame([row], columns=CSV_COLUMNS)
    df.to_csv(path, mode='a', header=not os.path.exists(path), index=False)
