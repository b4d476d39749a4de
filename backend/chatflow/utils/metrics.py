# /chatflow/utils/metrics.py

from prometheus_client import Counter, Histogram

# This file defines all Prometheus metrics used for interpreter monitoring.
# Centralizing them here makes them easy to find and manage.

# Intake Metrics
message_counter = Counter('chatflow_inbound_messages_total', 'Inbound messages by outcome', ['status'])
outbound_counter = Counter('chatflow_outbound_messages_total', 'Outbound sends', ['kind', 'status'])
session_store_operations = Counter('chatflow_session_store_operations_total', 'Session store operations', ['operation', 'status'])

# Interpreter Metrics
node_executions_counter = Counter('chatflow_node_executions_total', 'Node executions', ['node_type'])
step_halts_counter = Counter('chatflow_step_halts_total', 'Steps that halted at a node', ['node_type'])
loop_guard_counter = Counter('chatflow_loop_guard_trips_total', 'Steps aborted by the transition limit', ['flow_id'])
authoring_warnings_counter = Counter('chatflow_authoring_warnings_total', 'Authoring problems met at runtime', ['flow_id'])
timer_counter = Counter('chatflow_timers_total', 'Timer scheduling events', ['event'])

# Security Metrics
webhook_signature_counter = Counter('webhook_signature_verifications_total', 'Webhook signature verifications', ['status'])

# Performance Metrics
step_duration_histogram = Histogram('chatflow_step_duration_seconds', 'Time spent advancing a session by one event')
response_time_histogram = Histogram('response_time_seconds', 'Response time in seconds', ['endpoint'])
