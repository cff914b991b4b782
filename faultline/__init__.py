"""faultline: autonomous error observability and recovery for agent fleets.

This package features:
- Bounded, SQLite-backed error store with pattern analysis
- Background detector over type checker, linter and source-pattern rules
- Per-agent health monitoring from metrics snapshots
- Strategy-based recovery engine (retry / fallback / skip / escalate)
"""

from faultline.config import VERSION

__all__ = ["VERSION"]
