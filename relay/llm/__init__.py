"""
Provider-neutral LLM access: adapters, message normalization and fallback.

Provides one interface for chatting with Claude, Gemini and OpenAI with
automatic cross-provider fallback on transient failures and
irrevocable streaming once output has reached the caller.

Modules:
- types: messages, options, results, tiers, registration entries
- normalize: canonical history and per-provider wire formats
- tools: tool schema translation and tool-use parsing
- errors: single-point error classification
- retry: bounded exponential backoff for transient errors
- streaming: ProviderStream, the single-consumer chunk sequence
- providers: one adapter per vendor behind a shared contract
- manager: ProviderManager, the fallback orchestrator
"""
