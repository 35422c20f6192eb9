"""
Credential storage and resolution for provider API keys.

Resolution order per provider: short-lived in-memory cache, then the
persisted store, then the process environment.
"""
