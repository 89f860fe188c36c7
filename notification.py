"""
notification.py – Low-quota threshold engine.

This module contains ThresholdEngine, which turns the stream of usage
snapshots produced by every refresh into user-visible alerts:

  - check_threshold_crossing() is the per-item state machine.  It fires
    when an item first reaches a tier, drops to a more severe tier, or
    drops back into a tier after recovering above it.  It stays silent
    while an item sits flat inside a tier it was already alerted for.
  - evaluate() runs one refresh batch: it derives a remaining percentage
    for every quota item of every provider, applies the display filters,
    runs the state machine and builds one alert per severity bucket
    (critical, then urgent, then warning).  The coroutine
    check_and_notify() evaluates and then shows those alerts without
    blocking the event loop.

Per-item state lives only in memory.  A restart, reset_state() or a
change of the threshold configuration clears it.
"""

import asyncio
import inspect
import logging
import math
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, Iterator, List, Optional

from config import APP_NAME, DEFAULT_LANGUAGE
from models import ANTIGRAVITY, GITHUB_COPILOT, ZAI_CODING, DisplayFilters, Settings, UsageResult

logger = logging.getLogger(APP_NAME)

CRITICAL = "critical"
URGENT = "urgent"
WARNING = "warning"

# Most severe first; also the order notifications are sent in.
SEVERITY_ORDER = (CRITICAL, URGENT, WARNING)

MAX_LISTED_ITEMS = 3

PROVIDER_NAMES = {
    ANTIGRAVITY: "Antigravity",
    GITHUB_COPILOT: "GitHub Copilot",
    ZAI_CODING: "Z.ai",
}

MESSAGES = {
    "en": {
        CRITICAL: "Critical: quota almost exhausted",
        URGENT: "Urgent: quota running low",
        WARNING: "Warning: quota getting low",
        "more": "+{count} more",
    },
    "zh-TW": {
        CRITICAL: "嚴重：額度即將用盡",
        URGENT: "緊急：額度不足",
        WARNING: "提醒：額度偏低",
        "more": "還有 {count} 項",
    },
    "zh-CN": {
        CRITICAL: "严重：额度即将用尽",
        URGENT: "紧急：额度不足",
        WARNING: "提醒：额度偏低",
        "more": "还有 {count} 项",
    },
}


@dataclass
class ItemNotificationState:
    last_notified_threshold: Optional[float]
    last_percentage: float


@dataclass
class QuotaReading:
    card_id: str
    provider: str
    account_name: str
    item_name: str
    percentage: float
    unlimited: bool = False


@dataclass
class LowQuotaItem:
    provider: str
    account_name: str
    item_name: str
    percentage: float
    severity: str
    threshold: float


@dataclass
class Alert:
    severity: str
    title: str
    body: str
    items: List[LowQuotaItem] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Percentage derivation per provider
# ---------------------------------------------------------------------------

def round_half_up(value: float) -> int:
    """Round .5 away from zero for positive values (Python's round() is banker's)."""
    return int(math.floor(value + 0.5))


def _copilot_item_name(key: str) -> str:
    return key[:1].upper() + key[1:]


def _zai_item_name(limit_type: str) -> str:
    return " ".join(word.capitalize() for word in limit_type.split("_"))


def iter_readings(provider: str, results: List[UsageResult]) -> Iterator[QuotaReading]:
    """
    Yield one QuotaReading per quota item in *results*.

    Accounts whose fetch failed (``usage is None``) contribute nothing.
    """
    for result in results:
        usage = result.usage
        if usage is None:
            continue

        if provider == ANTIGRAVITY:
            for model in usage:
                yield QuotaReading(
                    card_id=f"{provider}-{result.account_id}-{model.model_name}",
                    provider=PROVIDER_NAMES[provider],
                    account_name=result.account_name,
                    item_name=model.model_name,
                    percentage=round_half_up(model.remaining_fraction * 100),
                )
        elif provider == GITHUB_COPILOT:
            for key, snapshot in usage.quota_snapshots.items():
                yield QuotaReading(
                    card_id=f"{provider}-{result.account_id}-{key}",
                    provider=PROVIDER_NAMES[provider],
                    account_name=result.account_name,
                    item_name=_copilot_item_name(key),
                    percentage=snapshot.percent_remaining,
                    unlimited=snapshot.unlimited,
                )
        elif provider == ZAI_CODING:
            for limit in usage.limits:
                # The API reports the consumed share; alerts work on what remains.
                yield QuotaReading(
                    card_id=f"{provider}-{result.account_id}-{limit.type}",
                    provider=PROVIDER_NAMES[provider],
                    account_name=result.account_name,
                    item_name=_zai_item_name(limit.type),
                    percentage=100 - limit.percentage,
                )
        else:
            raise ValueError(f"No quota reader for provider {provider!r}")


def severity_for(threshold: float, thresholds: List[float]) -> str:
    """
    Map *threshold* to a severity given the enabled thresholds: the lowest
    is critical, the second lowest urgent, every other one a warning.
    """
    ascending = sorted(set(thresholds))
    if threshold == ascending[0]:
        return CRITICAL
    if len(ascending) > 1 and threshold == ascending[1]:
        return URGENT
    return WARNING


def format_percentage(value: float) -> str:
    if float(value).is_integer():
        return f"{int(value)}%"
    return f"{value:.1f}%"


class ThresholdEngine:
    """
    Stateful evaluator of threshold crossings.

    Parameters
    ----------
    notifier : object, optional
        Display collaborator with ``show(title, body, severity, on_click)``.
        Without one, alerts are computed and returned but not displayed.
    on_navigate : callable, optional
        Invoked when the user clicks a notification: the host should
        bring the main window to the front and show the overview.
    """

    def __init__(self, notifier=None, on_navigate: Optional[Callable[[], None]] = None) -> None:
        self.notifier = notifier
        self.on_navigate = on_navigate
        self._state: Dict[str, ItemNotificationState] = {}

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def check_threshold_crossing(self, item_id: str, percentage: float, thresholds: List[float]) -> Optional[float]:
        """
        Record *percentage* for *item_id* and return the threshold to alert
        for, or None when no alert is due.

        *thresholds* are the enabled values sorted descending.  The tier
        reached is the lowest threshold the percentage is at or below, so
        a single drop across several tiers alerts once, at the most severe.
        """
        previous = self._state.get(item_id)
        last_notified = previous.last_notified_threshold if previous else None
        last_percentage = previous.last_percentage if previous else 100

        current: Optional[float] = None
        for threshold in thresholds:
            if percentage <= threshold:
                current = threshold

        self._state[item_id] = ItemNotificationState(
            last_notified_threshold=current,
            last_percentage=percentage,
        )

        if current is None:
            return None
        if last_notified is None:
            return current
        if current < last_notified:
            return current
        if last_percentage > current >= percentage:
            return current
        return None

    def get_state(self, item_id: Optional[str] = None):
        """Return a copy of one item's state, or of the whole mapping."""
        if item_id is not None:
            state = self._state.get(item_id)
            return replace(state) if state else None
        return {key: replace(value) for key, value in self._state.items()}

    def reset_state(self) -> None:
        self._state.clear()
        logger.info("Notification state reset")

    def reset_item_state(self, item_id: str) -> None:
        self._state.pop(item_id, None)

    # ------------------------------------------------------------------
    # Batch evaluation
    # ------------------------------------------------------------------

    def collect(
        self,
        results_by_provider: Dict[str, List[UsageResult]],
        thresholds: List[float],
        filters: DisplayFilters,
    ) -> List[LowQuotaItem]:
        """Run every visible quota item through the state machine."""
        items: List[LowQuotaItem] = []
        for provider, results in results_by_provider.items():
            for reading in iter_readings(provider, results or []):
                if reading.card_id in filters.hidden_card_ids:
                    continue
                if reading.unlimited and filters.hide_unlimited_quota:
                    continue

                threshold = self.check_threshold_crossing(reading.card_id, reading.percentage, thresholds)
                if threshold is None:
                    continue
                items.append(LowQuotaItem(
                    provider=reading.provider,
                    account_name=reading.account_name,
                    item_name=reading.item_name,
                    percentage=reading.percentage,
                    severity=severity_for(threshold, thresholds),
                    threshold=threshold,
                ))
        return items

    def evaluate(
        self,
        results_by_provider: Dict[str, List[UsageResult]],
        settings: Settings,
        filters: Optional[DisplayFilters] = None,
    ) -> List[Alert]:
        """
        Run one refresh batch through the state machine and build one alert
        per non-empty severity bucket, most severe first.  Nothing is shown.
        """
        thresholds = settings.enabled_thresholds()
        if not settings.notifications or not thresholds:
            return []

        items = self.collect(results_by_provider, thresholds, filters or DisplayFilters())

        alerts = []
        for severity in SEVERITY_ORDER:
            bucket = [item for item in items if item.severity == severity]
            if bucket:
                alerts.append(self.build_alert(severity, bucket, settings.language))
        return alerts

    async def check_and_notify(
        self,
        results_by_provider: Dict[str, List[UsageResult]],
        settings: Settings,
        filters: Optional[DisplayFilters] = None,
    ) -> List[Alert]:
        """
        Evaluate one refresh batch and show its alerts.  Returns the alerts.

        A notifier with a synchronous ``show`` runs in a worker thread so a
        slow notification service never stalls the event loop.
        """
        alerts = self.evaluate(results_by_provider, settings, filters)
        for alert in alerts:
            logger.info("Sending %s alert for %d item(s)", alert.severity, len(alert.items))
            if self.notifier is None:
                continue
            args = (alert.title, alert.body, alert.severity)
            if inspect.iscoroutinefunction(self.notifier.show):
                await self.notifier.show(*args, on_click=self._handle_click)
            else:
                await asyncio.to_thread(self.notifier.show, *args, on_click=self._handle_click)
        return alerts

    @staticmethod
    def build_alert(severity: str, items: List[LowQuotaItem], language: str = DEFAULT_LANGUAGE) -> Alert:
        messages = MESSAGES.get(language, MESSAGES[DEFAULT_LANGUAGE])
        lines = [
            f"• {item.item_name} ({item.account_name}): {format_percentage(item.percentage)}"
            for item in items[:MAX_LISTED_ITEMS]
        ]
        remaining = len(items) - MAX_LISTED_ITEMS
        if remaining > 0:
            lines.append(messages["more"].format(count=remaining))
        return Alert(severity=severity, title=messages[severity], body="\n".join(lines), items=list(items))

    def _handle_click(self) -> None:
        if self.on_navigate is not None:
            self.on_navigate()
