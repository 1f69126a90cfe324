from __future__ import annotations

from typing import Any

PricingTable = dict[str, dict[str, tuple[float, float]]]

# Rough token spend per repair layer, used when a provider reports no usage.
LAYER_TOKEN_ESTIMATES: dict[str, int] = {"auto_repair": 0, "critique_revise": 1000, "partial_regeneration": 1500, "model_escalation": 5000, "emergency_fallback": 3000}


def calculate_total_cost(usage: list[dict[str, Any]], pricing_table: PricingTable | None = None) -> float:
  """Estimate total USD cost from per-call token usage entries (prices are per million tokens)."""
  pricing = pricing_table or {}
  total = 0.0
  for entry in usage:
    provider_rates = pricing.get(str(entry.get("provider") or "").strip().lower(), {})
    price_in, price_out = provider_rates.get(str(entry.get("model") or "").strip(), (0.0, 0.0))
    in_tokens = int(entry.get("prompt_tokens") or 0)
    out_tokens = int(entry.get("completion_tokens") or 0)
    total += (in_tokens / 1_000_000) * price_in + (out_tokens / 1_000_000) * price_out
  return round(total, 6)


def summarize_usage(usage: list[dict[str, Any]], pricing_table: PricingTable | None = None) -> dict[str, Any]:
  """Aggregate token counts and cost for stage metadata."""
  return {
    "calls": len(usage),
    "prompt_tokens": sum(int(entry.get("prompt_tokens") or 0) for entry in usage),
    "completion_tokens": sum(int(entry.get("completion_tokens") or 0) for entry in usage),
    "estimated_cost": calculate_total_cost(usage, pricing_table),
    "models": sorted({str(entry.get("model")) for entry in usage if entry.get("model")}),
  }
