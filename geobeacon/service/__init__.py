"""The two schedulers that drive telemetry cycles.

Modules:
    foreground — long-lived service process with a fixed-interval timer
    channel    — stop-signal event channel (Unix socket + signals)
    fallback   — OS periodic job registration and per-invocation entry point
"""
