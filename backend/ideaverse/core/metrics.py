"""Prometheus metrics for the application"""
from prometheus_client import Counter, REGISTRY


def _counter(name, documentation, labelnames=()):
    # Re-imports (tests, reloads) must not register the same collector twice
    try:
        return Counter(name, documentation, labelnames)
    except ValueError:
        return REGISTRY._names_to_collectors.get(name)


# Generation metrics
generation_attempts_counter = _counter(
    'ideaverse_generation_attempts_total',
    'Generation attempts by outcome',
    ['outcome']
)

persist_failures_counter = _counter(
    'ideaverse_entitlement_persist_failures_total',
    'Failed attempts to persist an entitlement write',
    ['operation']
)

# Purchase metrics
purchases_applied_counter = _counter(
    'ideaverse_purchases_applied_total',
    'Purchases applied to entitlement records',
    ['plan_type', 'source']
)

duplicate_purchases_counter = _counter(
    'ideaverse_duplicate_purchases_total',
    'Purchase deliveries skipped because the purchase id was already applied',
    ['source']
)

# Webhook metrics
webhook_events_counter = _counter(
    'ideaverse_webhook_events_total',
    'Stripe webhook events by type and outcome',
    ['event_type', 'outcome']
)

subscriptions_expired_counter = _counter(
    'ideaverse_subscriptions_expired_total',
    'Recurring subscriptions moved to expired by the expiry sweep'
)

# Auth metrics
login_attempts_counter = _counter(
    'ideaverse_login_attempts_total',
    'Total number of login attempts',
    ['status']
)

# Scheduler metrics
scheduler_runs_counter = _counter(
    'ideaverse_scheduler_runs_total',
    'Total number of scheduler job runs',
    ['status']
)
