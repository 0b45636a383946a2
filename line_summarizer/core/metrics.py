"""
Prometheus metrics for the session lifecycle and its collaborators.

These complement the HTTP metrics provided by prometheus-fastapi-instrumentator.
"""

from prometheus_client import Counter, Histogram

# ============================================================================
# Webhook Metrics
# ============================================================================

webhook_events_total = Counter(
    'line_webhook_events_total',
    'Total number of LINE webhook events received',
    ['event_type']
)

webhook_event_errors_total = Counter(
    'line_webhook_event_errors_total',
    'Total number of LINE webhook events that failed processing',
    ['event_type', 'error_type']
)

webhook_signature_failures_total = Counter(
    'line_webhook_signature_failures_total',
    'Total number of webhook deliveries rejected for a bad signature'
)

automation_forwards_total = Counter(
    'line_automation_forwards_total',
    'Total number of webhook bodies forwarded to the automation endpoint',
    ['status']
)

# ============================================================================
# Session Lifecycle Metrics
# ============================================================================

sessions_opened_total = Counter(
    'line_sessions_opened_total',
    'Total number of chat sessions opened'
)

sessions_closed_total = Counter(
    'line_sessions_closed_total',
    'Total number of chat sessions closed',
    ['reason']
)

session_conflicts_total = Counter(
    'line_session_conflicts_total',
    'Conditional session writes that lost a race and were re-decided',
    ['operation']
)

messages_attached_total = Counter(
    'line_messages_attached_total',
    'Total number of messages attached to sessions',
    ['direction']
)

message_attach_duration_seconds = Histogram(
    'line_message_attach_duration_seconds',
    'Duration of handle_incoming_message in seconds',
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5]
)

# ============================================================================
# Summary Metrics
# ============================================================================

summary_generations_total = Counter(
    'line_summary_generations_total',
    'Total number of summary generation attempts',
    ['outcome']  # completed, failed, skipped
)

summary_generation_duration_seconds = Histogram(
    'line_summary_generation_duration_seconds',
    'Duration of summary generation calls in seconds',
    buckets=[0.25, 0.5, 1.0, 2.5, 5.0, 7.5, 10.0, 15.0]
)

# ============================================================================
# Audit / Authorization Metrics
# ============================================================================

audit_entries_total = Counter(
    'line_audit_entries_total',
    'Total number of audit entries written',
    ['category', 'status']
)

authorization_denials_total = Counter(
    'line_authorization_denials_total',
    'Total number of permission guard denials',
    ['permission']
)

# ============================================================================
# MongoDB Operation Metrics
# ============================================================================

mongodb_operations_total = Counter(
    'line_mongodb_operations_total',
    'Total number of MongoDB operations',
    ['operation', 'collection', 'status']
)
