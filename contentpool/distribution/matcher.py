"""Preference matching: decides which users receive a piece of content."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

import numpy as np

from contentpool.storage.models import UserPreferences

logger = logging.getLogger(__name__)

PRIORITY_HIGH = "high"
PRIORITY_MEDIUM = "medium"
PRIORITY_LOW = "low"
_PRIORITY_RANK = {PRIORITY_HIGH: 3, PRIORITY_MEDIUM: 2, PRIORITY_LOW: 1}

REASON_TOPIC = "topic_match"
REASON_KEYWORD = "keyword_match"
REASON_MANUAL = "manual_subscription"

DEFAULT_WEIGHTS = {"topics": 0.4, "keywords": 0.3, "importance": 0.2, "content_type": 0.1}
DEFAULT_MIN_MATCH_SCORE = 0.3
HIGH_PRIORITY_SCORE = 0.8
MEDIUM_PRIORITY_SCORE = 0.6
TOPIC_REASON_SCORE = 0.7
SCORE_DECIMALS = 6


@dataclass
class ContentFeatures:
    """What the analysis step says about a piece of content."""

    topics: list[str] = field(default_factory=list)
    keywords: list[str] = field(default_factory=list)
    importance_score: float = 0.0
    content_type: str = "news"
    source: str = ""


@dataclass
class DistributionTarget:
    """One user selected to receive one piece of content."""

    user_id: str
    entry_id: int
    processed_content_id: int
    content_hash: str
    priority: str
    reason: str
    score: float = 0.0


def _terms(values: Iterable[str]) -> set[str]:
    return {v.strip().casefold() for v in values if v and v.strip()}


def _overlap_ratio(content: set[str], wanted: set[str]) -> float:
    if not wanted:
        return 0.0
    return len(content & wanted) / len(wanted)


def priority_for(score: float) -> str:
    if score >= HIGH_PRIORITY_SCORE:
        return PRIORITY_HIGH
    if score >= MEDIUM_PRIORITY_SCORE:
        return PRIORITY_MEDIUM
    return PRIORITY_LOW


def reason_for(score: float) -> str:
    return REASON_TOPIC if score >= TOPIC_REASON_SCORE else REASON_KEYWORD


class DistributionMatcher:
    """Weighted preference matching.

    score = 0.4 * topic overlap + 0.3 * keyword overlap
            + 0.2 * (importance >= user's minimum) + 0.1 * (content type wanted)

    Overlap ratios are taken against the user's enabled set. Scores are
    rounded so that float summation cannot push a score across a threshold.
    """

    def __init__(self, config: dict[str, Any] | None = None) -> None:
        cfg = (config or {}).get("distribution", {})
        weights = {**DEFAULT_WEIGHTS, **cfg.get("weights", {})}
        self.w_topics: float = weights["topics"]
        self.w_keywords: float = weights["keywords"]
        self.w_importance: float = weights["importance"]
        self.w_content_type: float = weights["content_type"]
        self.min_match_score: float = cfg.get("min_match_score", DEFAULT_MIN_MATCH_SCORE)

    def score_match(self, features: ContentFeatures, prefs: UserPreferences) -> float:
        """Match score in [0, 1] for a single user."""
        return float(self.score_batch(features, [prefs])[0])

    def score_batch(
        self,
        features: ContentFeatures,
        preferences: list[UserPreferences],
    ) -> np.ndarray:
        """Vectorised match scores, one per preference profile, in input order."""
        n = len(preferences)
        if n == 0:
            return np.zeros(0)

        topics = _terms(features.topics)
        keywords = _terms(features.keywords)
        content_type = features.content_type.strip().casefold()

        topic = np.empty(n)
        keyword = np.empty(n)
        importance = np.empty(n)
        ctype = np.empty(n)
        for i, prefs in enumerate(preferences):
            topic[i] = _overlap_ratio(topics, _terms(prefs.enabled_topics))
            keyword[i] = _overlap_ratio(keywords, _terms(prefs.enabled_keywords))
            importance[i] = 1.0 if features.importance_score >= prefs.min_importance_score else 0.0
            ctype[i] = 1.0 if content_type in _terms(prefs.content_types) else 0.0

        totals = (
            self.w_topics * topic
            + self.w_keywords * keyword
            + self.w_importance * importance
            + self.w_content_type * ctype
        )
        return np.round(np.clip(totals, 0.0, 1.0), SCORE_DECIMALS)

    def select_targets(
        self,
        content_hash: str,
        processed_content_id: int,
        entry_id: int,
        features: ContentFeatures,
        preferences: list[UserPreferences],
        holders: set[str] | None = None,
        delivered_today: Mapping[str, int] | None = None,
    ) -> list[DistributionTarget]:
        """Pick the users to receive this entry, highest priority first.

        A user is skipped when they already hold a reference to the entry or
        have reached their daily limit. Ties keep the input order.
        """
        holders = holders or set()
        delivered_today = delivered_today or {}

        eligible = [
            p for p in preferences
            if p.user_id not in holders
            and delivered_today.get(p.user_id, 0) < p.max_daily_content
        ]
        scores = self.score_batch(features, eligible)

        targets: list[DistributionTarget] = []
        for prefs, raw in zip(eligible, scores):
            score = float(raw)
            if score < self.min_match_score:
                continue
            targets.append(
                DistributionTarget(
                    user_id=prefs.user_id,
                    entry_id=entry_id,
                    processed_content_id=processed_content_id,
                    content_hash=content_hash,
                    priority=priority_for(score),
                    reason=reason_for(score),
                    score=score,
                )
            )

        targets.sort(key=lambda t: -_PRIORITY_RANK[t.priority])
        logger.debug(
            "Matched %d/%d users for entry %d (%d already holding)",
            len(targets), len(preferences), entry_id, len(holders),
        )
        return targets
