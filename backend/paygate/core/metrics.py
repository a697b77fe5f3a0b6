"""Prometheus metrics for the application"""
from prometheus_client import Counter, REGISTRY

# Reconciliation metrics
try:
    payment_events_counter = Counter(
        'paygate_payment_events_total',
        'Total number of payment events handled, by channel and outcome',
        ['channel', 'outcome']
    )
except ValueError:
    payment_events_counter = REGISTRY._names_to_collectors.get('paygate_payment_events_total')

# Checkout metrics
try:
    checkout_sessions_counter = Counter(
        'paygate_checkout_sessions_total',
        'Total number of checkout sessions created or closed',
        ['product_class', 'status']
    )
except ValueError:
    checkout_sessions_counter = REGISTRY._names_to_collectors.get('paygate_checkout_sessions_total')

# One-click charge metrics
try:
    one_click_charges_counter = Counter(
        'paygate_one_click_charges_total',
        'Total number of one-click charge attempts',
        ['outcome']
    )
except ValueError:
    one_click_charges_counter = REGISTRY._names_to_collectors.get('paygate_one_click_charges_total')

# Entitlement metrics
try:
    entitlement_checks_counter = Counter(
        'paygate_entitlement_checks_total',
        'Total number of entitlement decisions',
        ['resource', 'granted']
    )
except ValueError:
    entitlement_checks_counter = REGISTRY._names_to_collectors.get('paygate_entitlement_checks_total')
