"""
models.py – Typed records for accounts, settings and usage snapshots.

The encrypted storage document is plain JSON with camelCase keys (the
on-disk format).  The dataclasses below are the in-process view of it:

  - Account variants, one per provider, tagged by their ``provider``
    attribute.  ``to_dict()`` produces the document form and
    ``account_from_dict()`` reads it back, filling defaults for fields
    that older documents lack.
  - Settings and NotificationThreshold.
  - Usage snapshots returned by provider adapters, and the per-account
    UsageResult slot produced by a refresh.
  - DisplayFilters derived from the customization state.
"""

import copy
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional, Set, Union

from config import DEFAULT_NOTIFICATION_THRESHOLDS, DEFAULT_SETTINGS
from errors import UnknownProviderError

ANTIGRAVITY = "antigravity"
GITHUB_COPILOT = "githubCopilot"
ZAI_CODING = "zaiCoding"


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(word.capitalize() for word in rest)


class _DocumentRecord:
    """Mixin translating between snake_case fields and camelCase JSON keys."""

    def to_dict(self) -> Dict[str, Any]:
        out = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None and f.default is None:
                continue
            out[_camel(f.name)] = copy.deepcopy(value)
        return out

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]):
        """Build a record from *raw*; list and dict values are copied, never shared."""
        kwargs = {}
        for f in fields(cls):
            key = _camel(f.name)
            if key in raw and raw[key] is not None:
                kwargs[f.name] = copy.deepcopy(raw[key])
        return cls(**kwargs)


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------

@dataclass
class AntigravityAccount(_DocumentRecord):
    id: str = ""
    display_name: str = ""
    show_in_overview: bool = True
    email: str = ""
    name: str = ""
    picture: Optional[str] = None
    access_token: str = ""
    refresh_token: str = ""
    expires_at: int = 0
    project_id: str = ""
    selected_models: List[str] = field(default_factory=list)

    provider = ANTIGRAVITY

    def needs_refresh(self, now_ms: int, threshold_ms: int) -> bool:
        return now_ms > self.expires_at - threshold_ms


@dataclass
class GithubCopilotAccount(_DocumentRecord):
    id: str = ""
    display_name: str = ""
    show_in_overview: bool = True
    login: str = ""
    email: str = ""
    name: str = ""
    avatar_url: Optional[str] = None
    access_token: str = ""
    refresh_token: str = ""
    expires_at: int = 0
    selected_quotas: List[str] = field(default_factory=list)

    provider = GITHUB_COPILOT

    def needs_refresh(self, now_ms: int, threshold_ms: int) -> bool:
        # GitHub OAuth app tokens without an expiry are stored with 0.
        if not self.expires_at or not self.refresh_token:
            return False
        return now_ms > self.expires_at - threshold_ms


@dataclass
class ZaiCodingAccount(_DocumentRecord):
    id: str = ""
    display_name: str = ""
    show_in_overview: bool = True
    name: str = ""
    api_key: str = ""
    selected_limits: List[str] = field(default_factory=list)

    provider = ZAI_CODING

    def needs_refresh(self, now_ms: int, threshold_ms: int) -> bool:
        return False


Account = Union[AntigravityAccount, GithubCopilotAccount, ZaiCodingAccount]

ACCOUNT_TYPES = {
    ANTIGRAVITY: AntigravityAccount,
    GITHUB_COPILOT: GithubCopilotAccount,
    ZAI_CODING: ZaiCodingAccount,
}


def account_class(provider: str):
    """Return the Account variant for *provider* or raise UnknownProviderError."""
    try:
        return ACCOUNT_TYPES[provider]
    except KeyError:
        raise UnknownProviderError(provider) from None


def account_from_dict(provider: str, raw: Dict[str, Any]) -> Account:
    return account_class(provider).from_dict(raw)


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

@dataclass
class NotificationThreshold(_DocumentRecord):
    value: float
    enabled: bool = True
    name: Optional[str] = None


@dataclass
class Settings:
    refresh_interval: int = DEFAULT_SETTINGS["refreshInterval"]
    notification_thresholds: List[NotificationThreshold] = field(
        default_factory=lambda: [
            NotificationThreshold.from_dict(t) for t in DEFAULT_NOTIFICATION_THRESHOLDS
        ]
    )
    notifications: bool = DEFAULT_SETTINGS["notifications"]
    language: str = DEFAULT_SETTINGS["language"]
    close_to_tray: bool = DEFAULT_SETTINGS["closeToTray"]
    low_quota_threshold: int = DEFAULT_SETTINGS["lowQuotaThreshold"]
    notification_reminder_interval: int = DEFAULT_SETTINGS["notificationReminderInterval"]

    def enabled_thresholds(self) -> List[float]:
        """Values of the enabled thresholds, sorted descending."""
        values = {t.value for t in self.notification_thresholds if t.enabled}
        return sorted(values, reverse=True)

    def to_dict(self) -> Dict[str, Any]:
        out = {}
        for f in fields(self):
            out[_camel(f.name)] = getattr(self, f.name)
        out["notificationThresholds"] = [t.to_dict() for t in self.notification_thresholds]
        return out

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Settings":
        """
        Build Settings from a document record, back-filling every missing
        key from DEFAULT_SETTINGS.
        """
        merged = dict(DEFAULT_SETTINGS)
        merged.update({k: v for k, v in (raw or {}).items() if v is not None})

        thresholds = []
        for item in merged.get("notificationThresholds") or []:
            if isinstance(item, dict) and "value" in item:
                thresholds.append(NotificationThreshold.from_dict(item))

        kwargs = {}
        for f in fields(cls):
            key = _camel(f.name)
            if f.name != "notification_thresholds" and key in merged:
                kwargs[f.name] = merged[key]
        return cls(notification_thresholds=thresholds, **kwargs)


# ---------------------------------------------------------------------------
# Usage snapshots
# ---------------------------------------------------------------------------

@dataclass
class ModelQuota:
    model_name: str
    remaining_fraction: float
    reset_time: Optional[str] = None


@dataclass
class CopilotQuotaSnapshot:
    entitlement: float
    remaining: float
    percent_remaining: float
    unlimited: bool = False


@dataclass
class CopilotUsage:
    access_type_sku: str
    copilot_plan: str
    quota_reset_date: str
    quota_snapshots: Dict[str, CopilotQuotaSnapshot] = field(default_factory=dict)


@dataclass
class ZaiLimit:
    type: str
    usage: float
    current_value: float
    remaining: float
    percentage: float
    next_reset_time: Optional[int] = None


@dataclass
class ZaiUsage:
    limits: List[ZaiLimit] = field(default_factory=list)


@dataclass
class UsageResult:
    """One account's slot in a refresh batch; ``usage`` is None on failure."""
    account_id: str
    account_name: str
    usage: Any = None
    error: Optional[str] = None


@dataclass
class TokenBundle:
    access_token: str
    refresh_token: str
    expires_at: int


@dataclass
class LoginResult:
    success: bool
    account: Optional[Account] = None
    error: Optional[str] = None


@dataclass
class DisplayFilters:
    hidden_card_ids: Set[str] = field(default_factory=set)
    hide_unlimited_quota: bool = False

    @classmethod
    def from_customization(cls, customization: Optional[Dict[str, Any]]) -> "DisplayFilters":
        """Cards with ``visible: false`` are hidden; the global flag hides unlimited quotas."""
        customization = customization or {}
        cards = customization.get("cards") or {}
        hidden = {
            card_id
            for card_id, card in cards.items()
            if isinstance(card, dict) and card.get("visible") is False
        }
        global_cfg = customization.get("global") or {}
        return cls(
            hidden_card_ids=hidden,
            hide_unlimited_quota=bool(global_cfg.get("hideUnlimitedQuota", False)),
        )
