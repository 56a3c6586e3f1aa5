"""
matcher.py — Keyword / sender trigger matching for inbound messages.

A message is an emergency iff SOME rule matches it, where a rule matches
when BOTH hold:

    keyword   any rule keyword is a substring of the lowercased body
    sender    the sender equals one of the rule's patterns exactly,
              or the rule carries the wildcard pattern "*"

Keywords compare case-insensitively; senders compare case-sensitively.
Rule order is kept for display only and never changes the outcome.

Default rule:
    keywords  emergency, accident, help, sos, danger, crash
    senders   *, 911, 112
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from backend.app.core.errors import NotFoundError
from backend.app.storage.store import PersistentStore, load_json, save_json

logger = logging.getLogger(__name__)

TRIGGERS_KEY = "emergency_triggers"
WILDCARD = "*"


@dataclass(frozen=True)
class TriggerRule:
    """
    Keyword × sender pattern pair.

    Keywords are lowercased on construction. A non-empty keyword set is a
    precondition checked at the API boundary; a rule without keywords
    simply never matches.
    """
    keywords: Tuple[str, ...]
    sender_patterns: Tuple[str, ...] = (WILDCARD,)
    auto_respond: bool = True

    def __post_init__(self) -> None:
        normalised = tuple(dict.fromkeys(
            k.strip().lower() for k in self.keywords if k and k.strip()
        ))
        object.__setattr__(self, "keywords", normalised)
        object.__setattr__(
            self, "sender_patterns",
            tuple(dict.fromkeys(s.strip() for s in self.sender_patterns if s and s.strip())),
        )

    @classmethod
    def build(
        cls,
        keywords: Iterable[str],
        sender_patterns: Iterable[str] = (WILDCARD,),
        auto_respond: bool = True,
    ) -> "TriggerRule":
        return cls(tuple(keywords), tuple(sender_patterns), auto_respond)

    def matches_body(self, lowered_body: str) -> bool:
        return any(keyword in lowered_body for keyword in self.keywords)

    def matches_sender(self, sender: str) -> bool:
        return WILDCARD in self.sender_patterns or sender in self.sender_patterns

    def to_dict(self) -> Dict[str, Any]:
        return {
            "keywords": list(self.keywords),
            "sender_patterns": list(self.sender_patterns),
            "auto_respond": self.auto_respond,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TriggerRule":
        return cls.build(
            data.get("keywords", ()),
            data.get("sender_patterns", (WILDCARD,)),
            bool(data.get("auto_respond", True)),
        )


DEFAULT_RULE = TriggerRule.build(
    ["emergency", "accident", "help", "sos", "danger", "crash"],
    [WILDCARD, "911", "112"],
    auto_respond=True,
)


@dataclass
class InboundMessage:
    """A text message handed to the core by the host."""
    sender: str
    body: str
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    id: Optional[str] = None
    is_emergency: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sender": self.sender,
            "body": self.body,
            "received_at": self.received_at.isoformat(),
            "is_emergency": self.is_emergency,
        }


class TriggerMatcher:
    """Mutable, persisted set of trigger rules."""

    def __init__(
        self,
        rules: Optional[Iterable[TriggerRule]] = None,
        store: Optional[PersistentStore] = None,
    ):
        self._rules: List[TriggerRule] = list(rules) if rules is not None else [DEFAULT_RULE]
        self.store = store
        self._lock = asyncio.Lock()

    async def load(self) -> None:
        """Replace the rules with the stored set; keep the current set if none stored."""
        if self.store is None:
            return
        async with self._lock:
            raw = await load_json(self.store, TRIGGERS_KEY)
            if raw is None:
                await self._save()
                return
            self._rules = [TriggerRule.from_dict(r) for r in raw]
        logger.info("Loaded %d trigger rules", len(self._rules))

    async def _save(self) -> None:
        if self.store is not None:
            await save_json(self.store, TRIGGERS_KEY, [r.to_dict() for r in self._rules])

    def rules(self) -> List[TriggerRule]:
        return list(self._rules)

    def evaluate(self, sender: str, body: str) -> bool:
        """True iff at least one rule matches both the body and the sender."""
        lowered = (body or "").lower()
        return any(
            rule.matches_body(lowered) and rule.matches_sender(sender)
            for rule in self._rules
        )

    def classify(self, message: InboundMessage) -> InboundMessage:
        """Set ``is_emergency`` on the message and return it."""
        message.is_emergency = self.evaluate(message.sender, message.body)
        if message.is_emergency:
            logger.warning("Emergency message detected from %s", message.sender)
        else:
            logger.debug("Message from %s is not an emergency", message.sender)
        return message

    async def add_rule(self, rule: TriggerRule) -> None:
        async with self._lock:
            self._rules.append(rule)
            await self._save()
        logger.info("Trigger rule added: %s", ", ".join(rule.keywords))

    async def remove_rule(self, index: int) -> TriggerRule:
        async with self._lock:
            if not 0 <= index < len(self._rules):
                raise NotFoundError("TriggerRule", index=index)
            removed = self._rules.pop(index)
            await self._save()
        logger.info("Trigger rule %d removed", index)
        return removed
