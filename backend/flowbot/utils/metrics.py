# /flowbot/utils/metrics.py

from prometheus_client import Counter, Histogram

# All Prometheus metrics for the workflow runtime live here.

# Interpreter
executions_started_counter = Counter('flow_executions_started_total', 'Executions created by a matching trigger', ['project_id'])
executions_finished_counter = Counter('flow_executions_finished_total', 'Executions reaching a state', ['status'])
steps_counter = Counter('flow_steps_total', 'Logged interpreter steps', ['node_type', 'status'])
ignored_events_counter = Counter('flow_ignored_events_total', 'Inbound events that changed nothing', ['reason'])
event_latency_histogram = Histogram('flow_event_seconds', 'Time spent handling one inbound event')

# Query executor
query_counter = Counter('flow_queries_total', 'Query executor calls', ['query', 'status'])

# Outbound messages and webhooks
outbound_messages_counter = Counter('flow_outbound_messages_total', 'Outbound chat messages', ['status'])
outbound_webhooks_counter = Counter('flow_outbound_webhooks_total', 'Outbound webhook calls', ['status'])

# Storage
database_operations_counter = Counter('flow_database_operations_total', 'Database operations', ['operation', 'status'])

# HTTP surface
response_time_histogram = Histogram('flow_http_response_seconds', 'HTTP response time in seconds', ['endpoint'])
