"""
Asynchronous job pipeline.

Jobs are submitted through the API, carried by a durable broker queue,
executed one process per delivery by the dispatcher, and tracked in a
TTL-bound status store:
- Explicit commit/discard of every delivery, exactly once
- Prefetch-bounded concurrency as the only backpressure
- Poison messages dropped instead of requeued
"""
