"""Compact formatting of run statistics for status lines and footers."""
from __future__ import annotations

import math

from turnstile.engine.models import Run


def format_model_name(model: str) -> str:
    """Map model ids and shorthands to display names."""
    lower = model.lower()
    for family in ("opus", "sonnet", "haiku"):
        if family in lower:
            return family.capitalize()
    return model[:1].upper() + model[1:]


def format_token_count(tokens: int) -> str:
    """45000 -> "45K", 1340000 -> "1.3M"."""
    if tokens >= 1_000_000:
        return f"{tokens / 1_000_000:.1f}M"
    if tokens >= 1_000:
        return f"{math.floor(tokens / 1_000 + 0.5)}K"
    return str(tokens)


def format_elapsed(seconds: float) -> str:
    """Whole seconds as "Ym Zs", or "Zs" under a minute."""
    total = int(max(0.0, seconds))
    minutes, secs = divmod(total, 60)
    if minutes > 0:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def format_cost(amount: float) -> str:
    if amount >= 1:
        return f"${amount:.2f}"
    return f"${amount:.4f}"


def run_stats_line(run: Run, now: float | None = None) -> str:
    """One-line summary: model, status, elapsed, tokens, cost, turns."""
    parts = [format_model_name(run.model), run.status.value, format_elapsed(run.elapsed(now))]
    if run.token_usage is not None:
        parts.append(
            f"{format_token_count(run.token_usage.input)} in / "
            f"{format_token_count(run.token_usage.output)} out"
        )
    if run.total_cost is not None:
        parts.append(format_cost(run.total_cost))
    if run.num_turns is not None:
        parts.append(f"{run.num_turns} turns")
    return " · ".join(parts)
