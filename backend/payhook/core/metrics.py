"""Prometheus metrics for the application"""
from prometheus_client import Counter, Gauge, REGISTRY

# Module may be re-imported under test runners; reuse registered collectors.

# Webhook metrics
try:
    webhooks_received_counter = Counter(
        'payhook_webhooks_received_total',
        'Total number of provider webhooks received',
        ['result']
    )
except ValueError:
    webhooks_received_counter = REGISTRY._names_to_collectors.get('payhook_webhooks_received_total')

# Processing metrics
try:
    events_processed_counter = Counter(
        'payhook_events_processed_total',
        'Total number of raw events run through the processor',
        ['status']
    )
except ValueError:
    events_processed_counter = REGISTRY._names_to_collectors.get('payhook_events_processed_total')

try:
    dispatch_dropped_counter = Counter(
        'payhook_dispatch_dropped_total',
        'Submissions dropped because the processing queue was full'
    )
except ValueError:
    dispatch_dropped_counter = REGISTRY._names_to_collectors.get('payhook_dispatch_dropped_total')

# Audit metrics
try:
    audit_write_failures_counter = Counter(
        'payhook_audit_write_failures_total',
        'Audit log entries that could not be written'
    )
except ValueError:
    audit_write_failures_counter = REGISTRY._names_to_collectors.get('payhook_audit_write_failures_total')

# Scheduler metrics
try:
    scheduler_runs_counter = Counter(
        'payhook_scheduler_runs_total',
        'Total number of scheduler job runs',
        ['job', 'status']
    )
except ValueError:
    scheduler_runs_counter = REGISTRY._names_to_collectors.get('payhook_scheduler_runs_total')

# Reconciliation metrics
try:
    reconciliation_discrepancies_gauge = Gauge(
        'payhook_reconciliation_discrepancies',
        'Discrepancies found by the last reconciliation run',
        ['kind']
    )
except ValueError:
    reconciliation_discrepancies_gauge = REGISTRY._names_to_collectors.get('payhook_reconciliation_discrepancies')
