"""Default recovery strategy table and YAML import/export.

The table is ordered; the recovery engine takes the first match. Fallback
handlers are code, so they are not part of the YAML form: a loaded
``fallback`` strategy gets the pattern-based fix handler.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml

from faultline.records import (
    FailureKind,
    FallbackOutcome,
    RecoveryActionKind,
    RecoveryStrategy,
)

logger = logging.getLogger(__name__)

# Added by self-tuning for frequent categories without a strategy
LEARNED_MAX_RETRIES = 2
LEARNED_RETRY_DELAY = 3.0


async def pattern_based_fix() -> FallbackOutcome:
    """Fallback for malformed output: the caller reparses with a lenient pattern."""
    return FallbackOutcome(success=True, message="Pattern-based fix applied")


def default_strategies() -> list[RecoveryStrategy]:
    return [
        RecoveryStrategy(
            pattern="rate limit|429",
            action=RecoveryActionKind.RETRY,
            kind=FailureKind.RATE_LIMIT,
            max_retries=3,
            retry_delay=5.0,
        ),
        RecoveryStrategy(
            pattern="model loading|503",
            action=RecoveryActionKind.RETRY,
            kind=FailureKind.MODEL_LOADING,
            max_retries=5,
            retry_delay=10.0,
        ),
        RecoveryStrategy(
            pattern="network|timeout|connection",
            action=RecoveryActionKind.RETRY,
            kind=FailureKind.NETWORK,
            max_retries=3,
            retry_delay=2.0,
        ),
        RecoveryStrategy(
            pattern="syntax|parse|json",
            action=RecoveryActionKind.FALLBACK,
            kind=FailureKind.PARSE,
            fallback=pattern_based_fix,
        ),
        RecoveryStrategy(
            pattern="critical|fatal",
            action=RecoveryActionKind.ESCALATE,
            kind=FailureKind.FATAL,
        ),
    ]


def learned_strategy(pattern: str) -> RecoveryStrategy:
    """Conservative retry strategy appended by self-tuning."""
    return RecoveryStrategy(
        pattern=pattern,
        action=RecoveryActionKind.RETRY,
        max_retries=LEARNED_MAX_RETRIES,
        retry_delay=LEARNED_RETRY_DELAY,
    )


def load_strategies(path: str | Path) -> list[RecoveryStrategy]:
    """Load an ordered strategy table from YAML.

    Expected shape:
        strategies:
          - pattern: "rate limit|429"
            action: retry
            kind: rate_limit
            max_retries: 3
            retry_delay: 5

    Raises:
        ValueError: If the file does not contain a strategy list
    """
    data = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    entries = data.get("strategies") if isinstance(data, dict) else data
    if not isinstance(entries, list):
        raise ValueError(f"{path}: expected a list of strategies")

    strategies = []
    for entry in entries:
        strategy = RecoveryStrategy.from_dict(entry)
        if strategy.action == RecoveryActionKind.FALLBACK:
            strategy.fallback = pattern_based_fix
        strategies.append(strategy)
    logger.info("Loaded %d recovery strategies from %s", len(strategies), path)
    return strategies


def dump_strategies(strategies: list[RecoveryStrategy], path: str | Path) -> None:
    """Write the strategy table to YAML (fallback handlers are not serialized)."""
    data = {"strategies": [strategy.to_dict() for strategy in strategies]}
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(yaml.dump(data, default_flow_style=False, sort_keys=False), encoding="utf-8")
    logger.info("Saved %d recovery strategies to %s", len(strategies), path)
