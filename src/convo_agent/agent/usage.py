"""Token and cost accounting across the requests of one conversation call."""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from typing import Any, Literal

from convo_agent.agent.types import get_attr

PricingTier = Literal["standard", "batch", "flex", "priority"]

TOKENS_PER_1M = 1_000_000


@dataclass(slots=True, frozen=True)
class TokenUsage:
    input_tokens: int = 0
    cached_input_tokens: int = 0
    reasoning_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            cached_input_tokens=self.cached_input_tokens + other.cached_input_tokens,
            reasoning_tokens=self.reasoning_tokens + other.reasoning_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )

    @classmethod
    def from_provider(cls, usage: Any) -> TokenUsage:
        """Build from a chat-completions ``usage`` payload (dict or object)."""
        input_tokens = _count(get_attr(usage, "prompt_tokens", None))
        output_tokens = _count(get_attr(usage, "completion_tokens", None))
        total_tokens = get_attr(usage, "total_tokens", None)
        prompt_details = get_attr(usage, "prompt_tokens_details", None)
        completion_details = get_attr(usage, "completion_tokens_details", None)
        return cls(
            input_tokens=input_tokens,
            cached_input_tokens=_count(get_attr(prompt_details, "cached_tokens", None)),
            reasoning_tokens=_count(get_attr(completion_details, "reasoning_tokens", None)),
            output_tokens=output_tokens,
            total_tokens=(
                _count(total_tokens) if total_tokens is not None else input_tokens + output_tokens
            ),
        )


def _count(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    if not math.isfinite(value):
        return 0
    return max(0, int(value))


@dataclass(slots=True, frozen=True)
class UsageCostUsd:
    input_usd: float = 0.0
    cached_input_usd: float = 0.0
    reasoning_usd: float = 0.0
    output_usd: float = 0.0
    total_usd: float = 0.0

    def __add__(self, other: UsageCostUsd) -> UsageCostUsd:
        return UsageCostUsd(
            input_usd=self.input_usd + other.input_usd,
            cached_input_usd=self.cached_input_usd + other.cached_input_usd,
            reasoning_usd=self.reasoning_usd + other.reasoning_usd,
            output_usd=self.output_usd + other.output_usd,
            total_usd=self.total_usd + other.total_usd,
        )


@dataclass(slots=True, frozen=True)
class ModelApiCost:
    """USD per 1M tokens; cached input falls back to the input rate."""

    input_usd_per_1m: float
    output_usd_per_1m: float
    cached_input_usd_per_1m: float | None = None


@dataclass(slots=True)
class UsageData:
    """Usage snapshot for one call to the conversation runner."""

    model: str
    initial_request_usage: TokenUsage = field(default_factory=TokenUsage)
    initial_request_cost_usd: UsageCostUsd = field(default_factory=UsageCostUsd)
    total_usage: TokenUsage = field(default_factory=TokenUsage)
    total_cost_usd: UsageCostUsd = field(default_factory=UsageCostUsd)
    total_requests: int = 0
    calls_per_tool: dict[str, int] = field(default_factory=dict)
    total_tool_calls: int = 0


class UsageAccumulator:
    """Merges usage of every request issued during one logical call.

    The first :meth:`add_usage` fixes the initial request usage; totals only
    ever grow.
    """

    def __init__(self, model: str) -> None:
        self._model = model
        self._initial_usage: TokenUsage | None = None
        self._initial_cost = UsageCostUsd()
        self._total_usage = TokenUsage()
        self._total_cost = UsageCostUsd()
        self._request_count = 0
        self._calls_per_tool: dict[str, int] = {}
        self._total_tool_calls = 0

    @property
    def model(self) -> str:
        return self._model

    @property
    def initial_request_usage(self) -> TokenUsage | None:
        return self._initial_usage

    @property
    def total_usage(self) -> TokenUsage:
        return self._total_usage

    @property
    def request_count(self) -> int:
        return self._request_count

    @property
    def calls_per_tool(self) -> dict[str, int]:
        return dict(self._calls_per_tool)

    @property
    def total_tool_calls(self) -> int:
        return self._total_tool_calls

    def add_usage(self, usage: TokenUsage, *, service_tier: str | None = None) -> None:
        cost = calculate_usage_cost_usd(self._model, usage, service_tier=service_tier)
        self._request_count += 1
        if self._initial_usage is None:
            self._initial_usage = usage
            self._initial_cost = cost
        self._total_usage = self._total_usage + usage
        self._total_cost = round_cost_to_cents(self._total_cost + cost)

    def record_tool_call(self, tool_name: str) -> None:
        self._calls_per_tool[tool_name] = self._calls_per_tool.get(tool_name, 0) + 1
        self._total_tool_calls += 1

    @property
    def usage_data(self) -> UsageData:
        return UsageData(
            model=self._model,
            initial_request_usage=self._initial_usage or TokenUsage(),
            initial_request_cost_usd=self._initial_cost,
            total_usage=self._total_usage,
            total_cost_usd=self._total_cost,
            total_requests=self._request_count,
            calls_per_tool=dict(self._calls_per_tool),
            total_tool_calls=self._total_tool_calls,
        )


def aggregate_usage_data(items: Iterable[UsageData]) -> UsageData | None:
    """Fold several usage snapshots into one; the first keeps its initial request."""
    usage_list = list(items)
    if not usage_list:
        return None
    first = usage_list[0]
    out = replace(first, calls_per_tool=dict(first.calls_per_tool))
    for item in usage_list[1:]:
        out.total_usage = out.total_usage + item.total_usage
        out.total_requests += item.total_requests
        out.total_tool_calls += item.total_tool_calls
        for name, count in item.calls_per_tool.items():
            out.calls_per_tool[name] = out.calls_per_tool.get(name, 0) + count
        out.total_cost_usd = round_cost_to_cents(out.total_cost_usd + item.total_cost_usd)
    return out


MODEL_API_COST_STANDARD: dict[str, ModelApiCost] = {
    "gpt-5.2": ModelApiCost(1.75, 14.0, 0.175),
    "gpt-5.1": ModelApiCost(1.25, 10.0, 0.125),
    "gpt-5": ModelApiCost(1.25, 10.0, 0.125),
    "gpt-5-mini": ModelApiCost(0.25, 2.0, 0.025),
    "gpt-5-nano": ModelApiCost(0.05, 0.4, 0.005),
    "gpt-5.2-chat-latest": ModelApiCost(1.75, 14.0, 0.175),
    "gpt-5.1-chat-latest": ModelApiCost(1.25, 10.0, 0.125),
    "gpt-5-chat-latest": ModelApiCost(1.25, 10.0, 0.125),
    "gpt-5.2-codex": ModelApiCost(1.75, 14.0, 0.175),
    "gpt-5.1-codex-max": ModelApiCost(1.25, 10.0, 0.125),
    "gpt-5.1-codex": ModelApiCost(1.25, 10.0, 0.125),
    "gpt-5-codex": ModelApiCost(1.25, 10.0, 0.125),
    "gpt-5.1-codex-mini": ModelApiCost(0.25, 2.0, 0.025),
    "gpt-5.2-pro": ModelApiCost(21.0, 168.0),
    "gpt-5-pro": ModelApiCost(15.0, 120.0),
    "gpt-4.1": ModelApiCost(2.0, 8.0, 0.5),
    "gpt-4.1-mini": ModelApiCost(0.4, 1.6, 0.1),
    "gpt-4.1-nano": ModelApiCost(0.1, 0.4, 0.025),
    "gpt-4o": ModelApiCost(2.5, 10.0, 1.25),
    "gpt-4o-2024-05-13": ModelApiCost(5.0, 15.0),
    "gpt-4o-mini": ModelApiCost(0.15, 0.6, 0.075),
    "gpt-realtime": ModelApiCost(4.0, 16.0, 0.4),
    "gpt-realtime-mini": ModelApiCost(0.6, 2.4, 0.06),
    "gpt-audio": ModelApiCost(2.5, 10.0),
    "gpt-audio-mini": ModelApiCost(0.6, 2.4),
    "o1": ModelApiCost(15.0, 60.0, 7.5),
    "o1-pro": ModelApiCost(150.0, 600.0),
    "o1-mini": ModelApiCost(1.1, 4.4, 0.55),
    "o3": ModelApiCost(2.0, 8.0, 0.5),
    "o3-pro": ModelApiCost(20.0, 80.0),
    "o3-mini": ModelApiCost(1.1, 4.4, 0.55),
    "o3-deep-research": ModelApiCost(10.0, 40.0, 2.5),
    "o4-mini": ModelApiCost(1.1, 4.4, 0.275),
    "o4-mini-deep-research": ModelApiCost(2.0, 8.0, 0.5),
    "gpt-5-search-api": ModelApiCost(1.25, 10.0, 0.125),
    "gpt-4o-mini-search-preview": ModelApiCost(0.15, 0.6),
    "gpt-4o-search-preview": ModelApiCost(2.5, 10.0),
    "computer-use-preview": ModelApiCost(3.0, 12.0),
    "codex-mini-latest": ModelApiCost(1.5, 6.0, 0.375),
}

MODEL_API_COST_BATCH: dict[str, ModelApiCost] = {
    "gpt-5.2": ModelApiCost(0.875, 7.0, 0.0875),
    "gpt-5.1": ModelApiCost(0.625, 5.0, 0.0625),
    "gpt-5": ModelApiCost(0.625, 5.0, 0.0625),
    "gpt-5-mini": ModelApiCost(0.125, 1.0, 0.0125),
    "gpt-5-nano": ModelApiCost(0.025, 0.2, 0.0025),
    "gpt-5.2-pro": ModelApiCost(10.5, 84.0),
    "gpt-5-pro": ModelApiCost(7.5, 60.0),
    "gpt-4.1": ModelApiCost(1.0, 4.0),
    "gpt-4.1-mini": ModelApiCost(0.2, 0.8),
    "gpt-4.1-nano": ModelApiCost(0.05, 0.2),
    "gpt-4o": ModelApiCost(1.25, 5.0),
    "gpt-4o-2024-05-13": ModelApiCost(2.5, 7.5),
    "gpt-4o-mini": ModelApiCost(0.075, 0.3),
    "o1": ModelApiCost(7.5, 30.0),
    "o1-pro": ModelApiCost(75.0, 300.0),
    "o3-pro": ModelApiCost(10.0, 40.0),
    "o3": ModelApiCost(1.0, 4.0),
    "o3-deep-research": ModelApiCost(5.0, 20.0),
    "o4-mini": ModelApiCost(0.55, 2.2),
    "o4-mini-deep-research": ModelApiCost(1.0, 4.0),
    "o3-mini": ModelApiCost(0.55, 2.2),
    "o1-mini": ModelApiCost(0.55, 2.2),
    "computer-use-preview": ModelApiCost(1.5, 6.0),
}

MODEL_API_COST_FLEX: dict[str, ModelApiCost] = {
    "gpt-5.2": ModelApiCost(0.875, 7.0, 0.0875),
    "gpt-5.1": ModelApiCost(0.625, 5.0, 0.0625),
    "gpt-5": ModelApiCost(0.625, 5.0, 0.0625),
    "gpt-5-mini": ModelApiCost(0.125, 1.0, 0.0125),
    "gpt-5-nano": ModelApiCost(0.025, 0.2, 0.0025),
    "o3": ModelApiCost(1.0, 4.0, 0.25),
    "o4-mini": ModelApiCost(0.55, 2.2, 0.138),
}

MODEL_API_COST_PRIORITY: dict[str, ModelApiCost] = {
    "gpt-5.2": ModelApiCost(3.5, 28.0, 0.35),
    "gpt-5.1": ModelApiCost(2.5, 20.0, 0.25),
    "gpt-5": ModelApiCost(2.5, 20.0, 0.25),
    "gpt-5-mini": ModelApiCost(0.45, 3.6, 0.045),
    "gpt-5.2-codex": ModelApiCost(3.5, 28.0, 0.35),
    "gpt-5.1-codex-max": ModelApiCost(2.5, 20.0, 0.25),
    "gpt-5.1-codex": ModelApiCost(2.5, 20.0, 0.25),
    "gpt-5-codex": ModelApiCost(2.5, 20.0, 0.25),
    "gpt-4.1": ModelApiCost(3.5, 14.0, 0.875),
    "gpt-4.1-mini": ModelApiCost(0.7, 2.8, 0.175),
    "gpt-4.1-nano": ModelApiCost(0.2, 0.8, 0.05),
    "gpt-4o": ModelApiCost(4.25, 17.0, 2.125),
    "gpt-4o-2024-05-13": ModelApiCost(8.75, 26.25),
    "gpt-4o-mini": ModelApiCost(0.25, 1.0, 0.125),
    "o3": ModelApiCost(3.5, 14.0, 0.875),
    "o4-mini": ModelApiCost(2.0, 8.0, 0.5),
}

_PRICING_TABLES: dict[PricingTier, dict[str, ModelApiCost]] = {
    "standard": MODEL_API_COST_STANDARD,
    "batch": MODEL_API_COST_BATCH,
    "flex": MODEL_API_COST_FLEX,
    "priority": MODEL_API_COST_PRIORITY,
}


def normalize_model_for_pricing(model: str) -> str:
    """Strip provider prefixes such as ``openai:`` or ``openai/``."""
    raw = (model or "").strip()
    return raw.rsplit(":", 1)[-1].rsplit("/", 1)[-1]


def normalize_service_tier(service_tier: str | None) -> PricingTier:
    value = (service_tier or "").strip().lower()
    if value in ("batch", "flex", "priority"):
        return value  # type: ignore[return-value]
    return "standard"


def resolve_model_api_cost(model: str, tier: PricingTier = "standard") -> ModelApiCost | None:
    name = normalize_model_for_pricing(model)
    if not name:
        return None
    table = _PRICING_TABLES[tier]
    if name in table:
        return table[name]
    if name.endswith("-latest"):
        return table.get(name.removesuffix("-latest"))
    return None


def calculate_usage_cost_usd(
    model: str,
    usage: TokenUsage,
    *,
    service_tier: str | None = None,
) -> UsageCostUsd:
    pricing = resolve_model_api_cost(model, normalize_service_tier(service_tier))
    if pricing is None:
        return UsageCostUsd()

    cached_tokens = max(0, usage.cached_input_tokens)
    non_cached_tokens = max(0, usage.input_tokens - cached_tokens)
    cached_rate = (
        pricing.cached_input_usd_per_1m
        if pricing.cached_input_usd_per_1m is not None
        else pricing.input_usd_per_1m
    )

    input_usd = (
        non_cached_tokens * pricing.input_usd_per_1m + cached_tokens * cached_rate
    ) / TOKENS_PER_1M
    cached_input_usd = cached_tokens * cached_rate / TOKENS_PER_1M
    reasoning_usd = max(0, usage.reasoning_tokens) * pricing.output_usd_per_1m / TOKENS_PER_1M
    output_usd = max(0, usage.output_tokens) * pricing.output_usd_per_1m / TOKENS_PER_1M
    return round_cost_to_cents(
        UsageCostUsd(
            input_usd=input_usd,
            cached_input_usd=cached_input_usd,
            reasoning_usd=reasoning_usd,
            output_usd=output_usd,
            total_usd=input_usd + output_usd,
        )
    )


def _round_cents(value: float) -> float:
    return math.floor(value * 100 + 0.5) / 100


def round_cost_to_cents(cost: UsageCostUsd) -> UsageCostUsd:
    input_usd = _round_cents(cost.input_usd)
    output_usd = _round_cents(cost.output_usd)
    return UsageCostUsd(
        input_usd=input_usd,
        cached_input_usd=_round_cents(cost.cached_input_usd),
        reasoning_usd=_round_cents(cost.reasoning_usd),
        output_usd=output_usd,
        total_usd=_round_cents(input_usd + output_usd),
    )
