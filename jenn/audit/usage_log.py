"""Append-only usage log for billing and analytics.

Writes one UsageRecord per successful generation as JSON Lines, tagged with
the provider and model that actually served the request.
"""

import logging
from datetime import UTC, datetime
from pathlib import Path

from jenn.schemas.llm import Usage, UsageRecord

logger = logging.getLogger(__name__)


class UsageLog:
    """Append-only JSONL usage log.

    Usage::

        usage_log = UsageLog("/path/to/usage.jsonl")
        usage_log.record(
            account_email="a@example.com",
            provider="openai",
            model="gpt-4o-mini",
            label="Draft reply",
            usage=Usage(prompt_tokens=120, completion_tokens=40),
        )
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def log(self, entry: UsageRecord) -> None:
        """Append a single usage record to the log file."""
        with self._path.open("a") as f:
            f.write(entry.model_dump_json() + "\n")
        logger.debug(
            "Usage: %s %s/%s tokens=%d",
            entry.label,
            entry.provider,
            entry.model,
            entry.total_tokens,
        )

    def record(
        self,
        *,
        account_email: str,
        provider: str,
        model: str,
        label: str,
        usage: Usage,
    ) -> UsageRecord:
        entry = UsageRecord(
            timestamp=datetime.now(UTC),
            account_email=account_email,
            provider=provider,
            model=model,
            label=label,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            total_tokens=usage.total_tokens,
        )
        self.log(entry)
        return entry

    def read_entries(
        self,
        *,
        since: datetime | None = None,
        account_email: str | None = None,
        limit: int | None = None,
    ) -> list[UsageRecord]:
        """Read usage records, oldest first, optionally filtered."""
        if not self._path.exists():
            return []

        entries: list[UsageRecord] = []
        with self._path.open() as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                entry = UsageRecord.model_validate_json(line)
                if since and entry.timestamp <= since:
                    continue
                if account_email and entry.account_email != account_email:
                    continue
                entries.append(entry)

        if limit is not None:
            entries = entries[-limit:]

        return entries

    def summarize(self, **filters) -> dict[str, dict[str, int]]:
        """Total calls and tokens per ``provider/model``."""
        summary: dict[str, dict[str, int]] = {}
        for entry in self.read_entries(**filters):
            key = f"{entry.provider}/{entry.model}"
            row = summary.setdefault(key, {"calls": 0, "tokens": 0})
            row["calls"] += 1
            row["tokens"] += entry.total_tokens
        return summary
