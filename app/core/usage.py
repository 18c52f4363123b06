"""
Usage Log

Durable per-user usage documents (users/{uid}/api_usage_{provider}) and the
rough token estimate written into them.
"""

from __future__ import annotations
import math
import logging
import re
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Optional

from app.database import FirestoreDB, SERVER_TIMESTAMP, db

logger = logging.getLogger("functions.usage")

# Hiragana, katakana, CJK unified ideographs and extension A
CJK_RE = re.compile(r"[\u3040-\u309F\u30A0-\u30FF\u4E00-\u9FAF\u3400-\u4DBF]")


def estimate_token_count(text: Optional[str]) -> int:
    """About 1.5 characters per token for CJK text, 4 otherwise."""
    if not text:
        return 0
    if CJK_RE.search(text):
        return math.ceil(len(text) / 1.5)
    return math.ceil(len(text) / 4)


@dataclass
class UsageEstimate:
    prompt_tokens: int
    completion_tokens: int
    total_tokens: Optional[int] = None

    def __post_init__(self):
        if self.total_tokens is None:
            self.total_tokens = self.prompt_tokens + self.completion_tokens

    @classmethod
    def from_texts(cls, prompt: str, completion: str) -> "UsageEstimate":
        """The total is estimated on the joined text, not summed."""
        return cls(
            estimate_token_count(prompt),
            estimate_token_count(completion),
            estimate_token_count(prompt + completion),
        )

    def to_dict(self) -> dict:
        return asdict(self)


def start_of_today() -> datetime:
    now = datetime.now(timezone.utc)
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


class UsageLog:
    """Appends and counts usage documents. Write failures never fail a call."""

    def __init__(self, store: Optional[FirestoreDB] = None):
        self.store = store or db

    def record(self, uid: str, provider: str, model: str, usage: UsageEstimate) -> None:
        try:
            self.store.add_usage_record(uid, provider, {
                "timestamp": SERVER_TIMESTAMP,
                "model": model,
                **usage.to_dict(),
            })
        except Exception as e:
            logger.error(f"Failed to record {provider} usage for {uid}: {e}")

    def count_today(self, uid: str, provider: str) -> int:
        try:
            return self.store.count_usage_since(uid, provider, start_of_today())
        except Exception as e:
            logger.error(f"Failed to count {provider} usage for {uid}: {e}")
            return 0
