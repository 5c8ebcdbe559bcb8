"""Tenant scoping for every knowledge-base operation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

__all__ = ["TenantScope"]


@dataclass(frozen=True, slots=True)
class TenantScope:
    """Organization and chatbot configuration pair isolating tenant data.

    Both identifiers are opaque. A scope cannot be built with a blank
    component, so every store filter constructed from it is fully scoped.

    Example:
        >>> scope = TenantScope("org-1", "bot-1")
        >>> scope.as_filter()
        {'organization_id': 'org-1', 'chatbot_config_id': 'bot-1'}
    """

    organization_id: str
    chatbot_config_id: str

    def __post_init__(self) -> None:
        for field_name in ("organization_id", "chatbot_config_id"):
            value = getattr(self, field_name)
            if not isinstance(value, str):
                raise TypeError(
                    f"{field_name} must be a string (got {type(value)!r})"
                )
            normalized = value.strip()
            if not normalized:
                raise ValueError(f"{field_name} cannot be empty")
            object.__setattr__(self, field_name, normalized)

    @classmethod
    def from_mapping(cls, payload: Any) -> "TenantScope":
        """Build a scope from a mapping using snake or camel case keys."""

        organization = payload.get("organization_id")
        if organization is None:
            organization = payload.get("organizationId")
        config = payload.get("chatbot_config_id")
        if config is None:
            config = payload.get("chatbotConfigId")
        return cls(organization, config)

    def as_filter(self) -> dict[str, str]:
        """Return the column filter every scoped query must include."""

        return {
            "organization_id": self.organization_id,
            "chatbot_config_id": self.chatbot_config_id,
        }

    def __str__(self) -> str:
        return f"{self.organization_id}/{self.chatbot_config_id}"
