"""Prometheus counters for the reconciliation pipeline.

Exposed together with the django-prometheus request metrics at ``/metrics``.
"""
from prometheus_client import Counter

MESSAGES_INGESTED = Counter(
    'lis_messages_ingested_total',
    'Device messages received, by device code and parse status.',
    ['device', 'status'],
)

RECONCILE_OUTCOMES = Counter(
    'lis_reconcile_outcomes_total',
    'Per-row reconciliation outcomes.',
    ['outcome'],
)
