"""
Pydantic configuration schema for the provider relay.

Fallback order, per-tier model tables, prices and retry policy are data,
not code. A relay.yaml that conforms to RelaySettings configures the whole
manager; changing it and calling `ProviderManager.apply_settings` takes
effect for new requests without restarting in-flight ones.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from relay.llm.retry import RetryPolicy
from relay.llm.types import ModelTier, TokenCost

KNOWN_PROVIDERS = ("claude", "gemini", "openai")


# ---------------------------------------------------------------------------
# Sub-models
# ---------------------------------------------------------------------------

class CostConfig(BaseModel):
    """USD per million tokens."""
    input: float = Field(0.0, ge=0)
    output: float = Field(0.0, ge=0)

    def to_token_cost(self) -> TokenCost:
        return TokenCost(input=self.input, output=self.output)


class RetrySettings(BaseModel):
    """Per-adapter backoff for transient errors. Delays in seconds."""
    attempts: int = Field(3, ge=1, le=10)
    initial_delay: float = Field(1.0, ge=0)
    max_delay: float = Field(60.0, ge=0)
    factor: float = Field(2.0, ge=1.0)
    jitter: float = Field(0.3, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def max_not_below_initial(self) -> RetrySettings:
        if self.max_delay < self.initial_delay:
            raise ValueError("max_delay must be >= initial_delay")
        return self

    def to_policy(self) -> RetryPolicy:
        return RetryPolicy(
            attempts=self.attempts,
            initial_delay=self.initial_delay,
            max_delay=self.max_delay,
            factor=self.factor,
            jitter=self.jitter,
        )


class ProviderSettings(BaseModel):
    """One backend's registration and model table."""
    id: str
    enabled: bool = True
    priority: int = 100
    models: dict[str, str] = Field(default_factory=dict)
    default_max_output_tokens: Optional[int] = Field(None, gt=0)
    api_key_env: Optional[str] = None
    store_key: Optional[str] = None
    base_url: Optional[str] = None
    costs: dict[str, CostConfig] = Field(default_factory=dict)

    @field_validator("id")
    @classmethod
    def known_provider(cls, v: str) -> str:
        if v not in KNOWN_PROVIDERS:
            raise ValueError(f"Unknown provider id '{v}'. Known: {', '.join(KNOWN_PROVIDERS)}")
        return v

    @field_validator("models", "costs")
    @classmethod
    def tiers_are_known(cls, v: dict) -> dict:
        valid = {tier.value for tier in ModelTier}
        unknown = set(v) - valid
        if unknown:
            raise ValueError(f"Unknown tier(s): {', '.join(sorted(unknown))}")
        return v

    def token_costs(self) -> dict[str, TokenCost]:
        return {tier: cost.to_token_cost() for tier, cost in self.costs.items()}


# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

def _default_providers() -> list[ProviderSettings]:
    return [
        ProviderSettings(
            id="gemini",
            priority=10,
            costs={
                "flash": CostConfig(input=0.10, output=0.40),
                "haiku": CostConfig(input=0.10, output=0.40),
                "sonnet": CostConfig(input=0.10, output=0.40),
                "opus": CostConfig(input=1.25, output=5.0),
            },
        ),
        ProviderSettings(
            id="claude",
            priority=20,
            costs={
                "flash": CostConfig(input=1.0, output=5.0),
                "haiku": CostConfig(input=1.0, output=5.0),
                "sonnet": CostConfig(input=3.0, output=15.0),
                "opus": CostConfig(input=15.0, output=75.0),
            },
        ),
        ProviderSettings(
            id="openai",
            priority=30,
            costs={
                "flash": CostConfig(input=0.15, output=0.60),
                "haiku": CostConfig(input=0.15, output=0.60),
                "sonnet": CostConfig(input=2.50, output=10.0),
                "opus": CostConfig(input=2.0, output=8.0),
            },
        ),
    ]


# ---------------------------------------------------------------------------
# Top-level Config
# ---------------------------------------------------------------------------

class RelaySettings(BaseModel):
    """Complete relay configuration."""
    fallback_order: list[str] = Field(default_factory=list)
    providers: list[ProviderSettings] = Field(default_factory=_default_providers)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    credential_cache_ttl: float = Field(30.0, ge=0)
    request_timeout: float = Field(120.0, gt=0)

    @field_validator("providers")
    @classmethod
    def unique_provider_ids(cls, v: list[ProviderSettings]) -> list[ProviderSettings]:
        ids = [p.id for p in v]
        duplicates = {i for i in ids if ids.count(i) > 1}
        if duplicates:
            raise ValueError(f"Duplicate provider id(s): {', '.join(sorted(duplicates))}")
        return v

    def enabled_providers(self) -> list[ProviderSettings]:
        return [p for p in self.providers if p.enabled]

    def resolved_fallback_order(self) -> list[str]:
        """Explicit order if given (unknown/disabled ids dropped), else by priority."""
        enabled = {p.id for p in self.enabled_providers()}
        if self.fallback_order:
            return [pid for pid in self.fallback_order if pid in enabled]
        ranked = sorted(self.enabled_providers(), key=lambda p: p.priority)
        return [p.id for p in ranked]

    def get_provider(self, provider_id: str) -> Optional[ProviderSettings]:
        for provider in self.providers:
            if provider.id == provider_id:
                return provider
        return None
