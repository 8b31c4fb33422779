from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

from chatrelay.config import Settings


@dataclass
class AuditPolicy:
    """Word-list content policy applied to prompts from non-privileged users."""

    enabled: bool = False
    sensitive_words: List[str] = field(default_factory=list)
    privileged_roles: List[str] = field(default_factory=lambda: ["admin"])

    @classmethod
    def from_settings(cls, settings: Settings) -> "AuditPolicy":
        return cls(
            enabled=settings.audit_enabled,
            sensitive_words=list(settings.audit_sensitive_words),
            privileged_roles=list(settings.privileged_roles),
        )

    def matched_word(self, text: str) -> Optional[str]:
        lowered = (text or "").casefold()
        for word in self.sensitive_words:
            if word and word.casefold() in lowered:
                return word
        return None


def audit_prompt(policy: AuditPolicy, text: str) -> bool:
    """Return True when ``text`` trips the policy."""

    if not policy.enabled:
        return False
    return policy.matched_word(text) is not None
