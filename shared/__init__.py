"""
Shared building blocks for the Secrets Portal services.

This package aggregates common pieces consumed by every service:

- config: Portal configuration via pydantic-settings
- logging: Structured logging and the per-invocation context
- metrics: Prometheus metrics helpers
- tracing: OpenTelemetry tracing config
- errors: Canonical error types and responses
- retry: Retrying executor for persistence calls
- records: Canonical secret metadata record and its repository
- persistence: Store and vault interfaces plus in-memory backends
- notifications: Notification payload and dispatchers

Any cross-service logic should live here to avoid import cycles across
service packages. Do not import from service_* packages into shared/.
"""
