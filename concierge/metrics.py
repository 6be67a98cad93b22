from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi import Response

# Query pipeline metrics
query_requests_total = Counter('concierge_query_requests_total', 'Total customer queries processed', ['status', 'mode'])
query_duration_seconds = Histogram('concierge_query_duration_seconds', 'End-to-end query processing duration')
pipeline_step_duration_seconds = Histogram('concierge_pipeline_step_duration_seconds', 'Pipeline step duration', ['step', 'outcome'])

# Intent metrics
intent_detections_total = Counter('concierge_intent_detections_total', 'Intents detected', ['intent', 'source'])
intent_confidence_score = Histogram('concierge_intent_confidence_score', 'Intent confidence scores')

# Retrieval metrics
retrieval_matches_total = Counter('concierge_retrieval_matches_total', 'Context matches returned', ['content_type'])
retrieval_failures_total = Counter('concierge_retrieval_failures_total', 'Failed context sub-lookups', ['source'])

# Rules metrics
rule_evaluations_total = Counter('concierge_rule_evaluations_total', 'Business rule evaluations', ['outcome'])
rule_conflicts_resolved_total = Counter('concierge_rule_conflicts_resolved_total', 'Rule action conflicts resolved')
rule_cache_lookups_total = Counter('concierge_rule_cache_lookups_total', 'Rule cache lookups', ['result'])

# Provider metrics
provider_calls_total = Counter('concierge_provider_calls_total', 'Upstream provider calls', ['provider', 'operation', 'outcome'])
provider_tokens_total = Counter('concierge_provider_tokens_total', 'Tokens consumed', ['operation'])

# Analytics metrics
analytics_events_total = Counter('concierge_analytics_events_total', 'Analytics records emitted', ['outcome'])


def record_query(status: str, duration: float, mode: str = "single"):
    """Record query pipeline metrics"""
    query_requests_total.labels(status=status, mode=mode).inc()
    query_duration_seconds.observe(duration)


def record_step(step: str, duration: float, success: bool):
    pipeline_step_duration_seconds.labels(step=step, outcome="success" if success else "failure").observe(duration)


def record_intent(intent: str, source: str, confidence: float = None):
    """Record intent detection metrics"""
    intent_detections_total.labels(intent=intent, source=source).inc()
    if confidence is not None:
        intent_confidence_score.observe(confidence)


def record_retrieval(content_type: str, count: int):
    if count:
        retrieval_matches_total.labels(content_type=content_type).inc(count)


def record_retrieval_failure(source: str):
    retrieval_failures_total.labels(source=source).inc()


def record_rule_evaluation(outcome: str, conflicts_resolved: int = 0):
    rule_evaluations_total.labels(outcome=outcome).inc()
    if conflicts_resolved:
        rule_conflicts_resolved_total.inc(conflicts_resolved)


def record_rule_cache(hit: bool):
    rule_cache_lookups_total.labels(result="hit" if hit else "miss").inc()


def record_provider_call(provider: str, operation: str, outcome: str, tokens: int = 0):
    """Record upstream provider call"""
    provider_calls_total.labels(provider=provider, operation=operation, outcome=outcome).inc()
    if tokens:
        provider_tokens_total.labels(operation=operation).inc(tokens)


def record_analytics_event(outcome: str):
    analytics_events_total.labels(outcome=outcome).inc()


async def metrics_endpoint():
    """Prometheus metrics endpoint"""
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
