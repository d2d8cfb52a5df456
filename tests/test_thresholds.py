import pytest

from dwo_loadtest.metrics import Counter, Gauge, Trend
from dwo_loadtest.thresholds import (CONTROLLER_THRESHOLDS, WEBHOOK_THRESHOLDS, Threshold,
                                     ThresholdSyntaxError, evaluate_thresholds, thresholds_passed)


def _by_metric(results):
    return {r.metric: r for r in results}


@pytest.mark.parametrize('expression,aggregation,op,target,pct', [
    ('p(95)<15000', 'p', '<', 15000, 95),
    ('p(99.9) <= 10', 'p', '<=', 10, 99.9),
    ('count<5', 'count', '<', 5, None),
    ('value == 0', 'value', '==', 0, None),
    ('rate>0.95', 'rate', '>', 0.95, None),
    ('avg>=-1', 'avg', '>=', -1, None),
])
def test_parse(expression, aggregation, op, target, pct):
    threshold = Threshold.parse('m', expression)
    assert threshold.aggregation == aggregation
    assert threshold.op == op
    assert threshold.target == target
    assert threshold.percentile == pct


@pytest.mark.parametrize('expression', ['p95<100', 'count', 'rate => 1', 'sum<3', ''])
def test_parse_rejects_garbage(expression):
    with pytest.raises(ThresholdSyntaxError):
        Threshold.parse('m', expression)


def test_untouched_run_passes(aggregator):
    results = evaluate_thresholds(CONTROLLER_THRESHOLDS, aggregator)
    assert len(results) == 9
    assert thresholds_passed(results)
    by_metric = _by_metric(results)
    assert by_metric['devworkspace_ready_failed'].observed == 0
    assert by_metric['devworkspace_create_duration'].observed is None


def test_six_failures_breach_and_two_pass(aggregator):
    aggregator.increment('devworkspace_ready_failed', 6)
    results = evaluate_thresholds(CONTROLLER_THRESHOLDS, aggregator)
    assert not _by_metric(results)['devworkspace_ready_failed'].passed
    assert not thresholds_passed(results)

    healthy = type(aggregator)()
    healthy.increment('devworkspace_ready_failed', 2)
    assert thresholds_passed(evaluate_thresholds(CONTROLLER_THRESHOLDS, healthy))


def test_ready_duration_percentile(aggregator):
    for ms in [20000] * 95 + [70000] * 5:
        aggregator.observe('devworkspace_ready_duration', ms)
    result = _by_metric(evaluate_thresholds(CONTROLLER_THRESHOLDS, aggregator))['devworkspace_ready_duration']
    assert result.passed

    for ms in [70000] * 10:
        aggregator.observe('devworkspace_ready_duration', ms)
    result = _by_metric(evaluate_thresholds(CONTROLLER_THRESHOLDS, aggregator))['devworkspace_ready_duration']
    assert not result.passed
    assert result.observed == pytest.approx(70000)


def test_restart_gauge_breach(aggregator):
    aggregator.set_gauge('operator_pod_restarts_total', 1)
    result = _by_metric(evaluate_thresholds(CONTROLLER_THRESHOLDS, aggregator))['operator_pod_restarts_total']
    assert not result.passed
    assert result.observed == 1


def test_checks_rate(aggregator):
    for _ in range(19):
        aggregator.check('DevWorkspace created', True)
    aggregator.check('DevWorkspace created', False)
    assert not _by_metric(evaluate_thresholds(CONTROLLER_THRESHOLDS, aggregator))['checks'].passed

    aggregator.check('DevWorkspace created', True)
    assert _by_metric(evaluate_thresholds(CONTROLLER_THRESHOLDS, aggregator))['checks'].passed


def test_registered_but_empty_metrics_pass(aggregator):
    aggregator.register('devworkspace_delete_duration', Trend)
    aggregator.register('etcd_pod_restarts_total', Gauge)
    aggregator.register('operator_cpu_violations', Counter)
    assert thresholds_passed(evaluate_thresholds(CONTROLLER_THRESHOLDS, aggregator))


def test_unsupported_aggregation_for_kind(aggregator):
    aggregator.increment('devworkspace_ready_failed')
    with pytest.raises(ThresholdSyntaxError):
        evaluate_thresholds({'devworkspace_ready_failed': ['p(95)<1']}, aggregator)


def test_webhook_security_thresholds(aggregator):
    assert thresholds_passed(evaluate_thresholds(WEBHOOK_THRESHOLDS, aggregator))
    aggregator.increment('exec_unexpected_allowed_total')
    results = _by_metric(evaluate_thresholds(WEBHOOK_THRESHOLDS, aggregator))
    assert not results['exec_unexpected_allowed_total'].passed
    assert results['invalid_mutating_allowed_total'].passed


def test_describe():
    from dwo_loadtest.thresholds import ThresholdResult
    assert 'no data' in ThresholdResult('m', 'p(95)<1', None, True).describe()
    assert '(observed 6)' in ThresholdResult('m', 'count<5', 6.0, False).describe()
