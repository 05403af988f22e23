"""Secret name exclusion rules.

Global patterns (seeded by migration: GITHUB_TOKEN, ACTIONS_*, RUNNER_* and
friends) are checked before project patterns. A pattern that fails to compile
is logged and ignored rather than blocking every sync for the project.
"""

import re
from dataclasses import dataclass

from secretsync.logging_config import get_logger
from secretsync.store.protocol import ExclusionRule, SyncStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class ExclusionMatch:
    pattern: str
    is_global: bool
    reason: str


class ExclusionMatcher:
    """Compiled rules for one project, global ones first."""

    def __init__(self, rules: list[ExclusionRule]) -> None:
        ordered = sorted(rules, key=lambda r: not r.is_global)
        self._compiled: list[tuple[re.Pattern[str], ExclusionRule]] = []
        for rule in ordered:
            try:
                self._compiled.append((re.compile(rule.pattern), rule))
            except re.error as exc:
                logger.warning(
                    "Ignoring invalid exclusion pattern",
                    pattern=rule.pattern,
                    is_global=rule.is_global,
                    error=str(exc),
                )

    def __len__(self) -> int:
        return len(self._compiled)

    def match(self, secret_name: str) -> ExclusionMatch | None:
        for regex, rule in self._compiled:
            if regex.search(secret_name):
                return ExclusionMatch(pattern=rule.pattern, is_global=rule.is_global, reason=rule.reason)
        return None


async def load_matcher(store: SyncStore, project_id: str) -> ExclusionMatcher:
    return ExclusionMatcher(await store.list_exclusion_patterns(project_id))
