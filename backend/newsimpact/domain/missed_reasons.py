"""
Priority-ordered decision table explaining why a material move was missed.

Each row pairs a reason code with a predicate over the miss context. Rows
are evaluated in order and the first match wins, so the table reads the
same way the classification behaves. New reasons are added by inserting a
row, not by growing a conditional.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Protocol, Sequence

from newsimpact.domain.market import ArticleSummary

WEAK_SENTIMENT_THRESHOLD = 0.3


class MentionChecker(Protocol):
    def has_stock_mention(self, article_id: int, symbol: str) -> bool:
        ...


class MissedReasonCode(str, Enum):
    NO_PRECEDING_NEWS = "NO_PRECEDING_NEWS"
    NO_STOCK_MENTION = "NO_STOCK_MENTION"
    WEAK_SENTIMENT = "WEAK_SENTIMENT"
    NO_HIGH_IMPACT_NEWS = "NO_HIGH_IMPACT_NEWS"
    NEWS_NOT_PROCESSED = "NEWS_NOT_PROCESSED"
    UNCLASSIFIED = "UNCLASSIFIED"


@dataclass
class MissContext:
    stock_symbol: str
    articles: Sequence[ArticleSummary]
    mention_checker: Optional[MentionChecker] = None
    _mention_found: Optional[bool] = field(default=None, repr=False)

    @property
    def preceding_news_count(self) -> int:
        return len(self.articles)

    def any_article_mentions_symbol(self) -> bool:
        """Ask the entity extractor once; without one, assume no mention was extracted."""
        if self._mention_found is None:
            if self.mention_checker is None:
                self._mention_found = False
            else:
                self._mention_found = any(
                    self.mention_checker.has_stock_mention(article.id, self.stock_symbol)
                    for article in self.articles
                )
        return self._mention_found


@dataclass(frozen=True)
class MissedReasonRule:
    code: MissedReasonCode
    description: str
    applies: Callable[[MissContext], bool]


def _no_news(ctx: MissContext) -> bool:
    return ctx.preceding_news_count == 0


def _no_mention(ctx: MissContext) -> bool:
    return ctx.preceding_news_count > 0 and not ctx.any_article_mentions_symbol()


def _weak_sentiment(ctx: MissContext) -> bool:
    scores = [a.sentiment_score for a in ctx.articles if a.sentiment_score is not None]
    if not scores:
        return False
    return sum(abs(s) for s in scores) / len(scores) < WEAK_SENTIMENT_THRESHOLD


def _no_high_impact(ctx: MissContext) -> bool:
    levels = [a.impact_level.upper() for a in ctx.articles if a.impact_level]
    return bool(levels) and "HIGH" not in levels


def _not_processed(ctx: MissContext) -> bool:
    statuses = [a.status.upper() for a in ctx.articles if a.status]
    return any(status != "PROCESSED" for status in statuses)


MISSED_REASON_TABLE: List[MissedReasonRule] = [
    MissedReasonRule(MissedReasonCode.NO_PRECEDING_NEWS, "No preceding news coverage", _no_news),
    MissedReasonRule(MissedReasonCode.NO_STOCK_MENTION, "News present but no stock mention extracted", _no_mention),
    MissedReasonRule(MissedReasonCode.WEAK_SENTIMENT, "Weak sentiment signals", _weak_sentiment),
    MissedReasonRule(MissedReasonCode.NO_HIGH_IMPACT_NEWS, "No high-impact news detected", _no_high_impact),
    MissedReasonRule(MissedReasonCode.NEWS_NOT_PROCESSED, "Some news not processed in time", _not_processed),
    MissedReasonRule(MissedReasonCode.UNCLASSIFIED, "Unclassified miss", lambda ctx: True),
]


def classify_missed_reason(
    ctx: MissContext,
    table: Sequence[MissedReasonRule] = MISSED_REASON_TABLE,
) -> MissedReasonRule:
    """Return the first row whose predicate holds."""
    for rule in table:
        if rule.applies(ctx):
            return rule
    raise LookupError("Missed-reason table has no catch-all row")
