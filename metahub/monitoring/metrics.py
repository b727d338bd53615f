from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response

REQUEST_COUNT = Counter("http_requests_total", "Total HTTP requests", ["path", "method", "status"])
REQUEST_LATENCY = Histogram("http_request_latency_seconds", "HTTP request latency", ["path", "method"])

WEBHOOK_EVENTS = Counter("webhook_events_total", "Normalized webhook events", ["channel", "event_type"])
WEBHOOK_REJECTED = Counter("webhook_rejected_total", "Webhook deliveries rejected at verification", ["reason"])
RULE_EXECUTIONS = Counter("automation_rule_executions_total", "Automation rule runs", ["status"])
AI_REPLIES = Counter("ai_reply_outcomes_total", "AI auto-reply decisions", ["reason"])
SCHEDULED_ACTIONS = Counter("scheduled_actions_total", "Scheduled action attempts", ["status"])
DISPATCH_QUEUE_DEPTH = Gauge("dispatch_queue_depth", "Inbound events waiting for processing")


def metrics_response() -> Response:
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
