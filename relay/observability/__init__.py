"""
Observability for the provider relay: structured logging with a
per-request id carried through retries, fallbacks and stream failures.
"""
