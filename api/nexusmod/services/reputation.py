"""Reputation / trust scoring.

Reputation is a loyalty badge, not an enforcement mechanism. The score unlocks
cosmetic perks and a tier label; it never limits posting or messaging.
calculate_restrictions() and check_posting_allowed() exist so callers have a
stable shape to read, and they always answer "unrestricted".

Score formula over a trailing window (default 7 days):

    score = 50
          + 3 * helpful_posts
          + consistency          # min(total_posts / 7 * 10, 15), only when total_posts >= 3
          + engagement           # min((messages + total_posts) / 20 * 15, 20)
          + 5 * marketplace_rating
          - 15 * violations      # moderation log actions block/ban
          - 5 * warnings         # moderation log action warn

clamped to [0, 100] and rounded to two decimals. Tier and perks are derived
from the rounded score, so the stored triple is always self-consistent.

Design notes:
- marketplace_rating is the rating-count-weighted mean across all of the
  seller's products; product ratings are not timestamped, so it is not windowed.
- A user with no account row scores 50 and nothing is written.
- A manual override sticks until the next recompute replaces it.
- Concurrent recomputes of the same user are last-writer-wins; the result is
  a function of the window, so both writers store the same thing.
"""

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Optional

import structlog
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from nexusmod.clock import Clock, utcnow
from nexusmod.config import settings
from nexusmod.metrics import reputation_recomputes
from nexusmod.models.content import ChatMessage, CommunityPost, MarketplaceProduct, User
from nexusmod.models.moderation_log import ModerationLogEntry
from nexusmod.models.reputation import UserReputation

log = structlog.get_logger(__name__)

BASE_SCORE = 50.0
HELPFUL_MIN_LIKES = 5
HELPFUL_MIN_COMMENTS = 3
UNLIMITED_POSTS_PER_HOUR = 999

TIER_THRESHOLDS = (
    (90, "legendary"),
    (75, "elite"),
    (60, "veteran"),
    (40, "trusted"),
)


class ReputationNotFoundError(Exception):
    """Raised when an admin action targets a user with no reputation record."""
    pass


@dataclass(frozen=True)
class ReputationSignals:
    """Raw counts read from the trailing window."""

    total_posts: int = 0
    helpful_posts: int = 0
    message_count: int = 0
    violations: int = 0
    warnings: int = 0
    marketplace_rating: float = 0.0


@dataclass(frozen=True)
class ReputationMetrics:
    helpful_posts: int
    total_posts: int
    violations: int
    warnings: int
    consistency: float
    engagement: float
    marketplace_rating: float


def compute_score(signals: ReputationSignals) -> tuple[float, ReputationMetrics]:
    """Pure score computation. Same signals, same score."""
    consistency = (
        min(signals.total_posts / 7 * 10, 15.0) if signals.total_posts >= 3 else 0.0
    )
    engagement = min((signals.message_count + signals.total_posts) / 20 * 15, 20.0)

    score = BASE_SCORE
    score += signals.helpful_posts * 3
    score += consistency
    score += engagement
    score += signals.marketplace_rating * 5
    score -= signals.violations * 15
    score -= signals.warnings * 5
    score = round(max(0.0, min(100.0, score)), 2)

    metrics = ReputationMetrics(
        helpful_posts=signals.helpful_posts,
        total_posts=signals.total_posts,
        violations=signals.violations,
        warnings=signals.warnings,
        consistency=consistency,
        engagement=engagement,
        marketplace_rating=signals.marketplace_rating,
    )
    return score, metrics


def calculate_tier(score: float) -> str:
    for threshold, tier in TIER_THRESHOLDS:
        if score >= threshold:
            return tier
    return "novice"


def calculate_perks(score: float) -> dict:
    return {
        "fast_posting": score >= 60,
        "highlight_badge": score >= 75,
        "visibility_boost": score >= 75,
        "priority_support": score >= 90,
    }


def calculate_restrictions(score: float) -> dict:
    # Loyalty system only: every score gets unlimited posting
    return {
        "cooldown_until": None,
        "posting_limited": False,
        "max_posts_per_hour": UNLIMITED_POSTS_PER_HOUR,
    }


def _empty_metrics() -> dict:
    return asdict(ReputationMetrics(0, 0, 0, 0, 0.0, 0.0, 0.0))


class ReputationScorer:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Clock = utcnow,
        window_days: Optional[int] = None,
        history_limit: Optional[int] = None,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock
        if window_days is None:
            window_days = settings.reputation_window_days
        if history_limit is None:
            history_limit = settings.reputation_history_limit
        self._window = timedelta(days=window_days)
        self._history_limit = history_limit

    async def initialize(self, user_id: str, user_name: str) -> UserReputation:
        """Create the default record (score 50, novice) if the user has none."""
        async with self._session_factory() as session:
            rep = await self._get_or_create(session, user_id, user_name)
            await session.commit()
        return rep

    async def get(self, user_id: str) -> Optional[UserReputation]:
        async with self._session_factory() as session:
            return await session.get(UserReputation, user_id)

    async def leaderboard(self, limit: int = 100) -> list[UserReputation]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(UserReputation).order_by(UserReputation.score.desc()).limit(limit)
            )
            return list(result.scalars().all())

    async def check_posting_allowed(self, user_id: str) -> dict:
        return {"allowed": True}

    async def gather_signals(self, session: AsyncSession, user_id: str, since: datetime) -> ReputationSignals:
        """Read the trailing-window counts for one user."""
        total_posts, helpful_posts = (
            await session.execute(
                select(
                    func.count(CommunityPost.id),
                    func.count(CommunityPost.id).filter(
                        or_(
                            CommunityPost.likes >= HELPFUL_MIN_LIKES,
                            CommunityPost.comments_count >= HELPFUL_MIN_COMMENTS,
                        )
                    ),
                )
                .where(CommunityPost.user_id == user_id)
                .where(CommunityPost.created_at >= since)
            )
        ).one()

        action_rows = (
            await session.execute(
                select(ModerationLogEntry.action, func.count())
                .where(ModerationLogEntry.user_id == user_id)
                .where(ModerationLogEntry.timestamp >= since)
                .group_by(ModerationLogEntry.action)
            )
        ).all()
        by_action = {action: count for action, count in action_rows}

        message_count = (
            await session.execute(
                select(func.count(ChatMessage.id))
                .where(ChatMessage.sender_id == user_id)
                .where(ChatMessage.created_at >= since)
            )
        ).scalar_one()

        rating_sum, rating_total = (
            await session.execute(
                select(
                    func.sum(MarketplaceProduct.rating * MarketplaceProduct.rating_count),
                    func.sum(MarketplaceProduct.rating_count),
                )
                .where(MarketplaceProduct.seller_id == user_id)
                .where(MarketplaceProduct.rating.is_not(None))
                .where(MarketplaceProduct.rating_count > 0)
            )
        ).one()
        marketplace_rating = (rating_sum / rating_total) if rating_total else 0.0

        return ReputationSignals(
            total_posts=total_posts or 0,
            helpful_posts=helpful_posts or 0,
            message_count=message_count or 0,
            violations=by_action.get("block", 0) + by_action.get("ban", 0),
            warnings=by_action.get("warn", 0),
            marketplace_rating=float(marketplace_rating),
        )

    async def recompute(self, user_id: str) -> float:
        """Recompute and persist one user's score from the trailing window.

        Returns:
            The clamped score, or 50.0 without any write when the user is unknown.
        """
        now = self._clock()
        async with self._session_factory() as session:
            user = await session.get(User, user_id)
            if user is None:
                reputation_recomputes.labels(status="missing_user").inc()
                return BASE_SCORE

            signals = await self.gather_signals(session, user_id, now - self._window)
            score, metrics = compute_score(signals)

            rep = await self._get_or_create(session, user_id, user.name or "Unknown")
            rep.score = score
            rep.tier = calculate_tier(score)
            rep.perks = calculate_perks(score)
            rep.restrictions = calculate_restrictions(score)
            rep.metrics = asdict(metrics)
            rep.last_calculated = now
            rep.manual_override_active = False
            await session.commit()

        reputation_recomputes.labels(status="success").inc()
        log.info("reputation_recomputed", user_id=user_id, score=score, tier=calculate_tier(score))
        return score

    async def recompute_all(self) -> dict:
        """Recompute every user sequentially; one user's failure does not stop the sweep."""
        async with self._session_factory() as session:
            user_ids = list((await session.execute(select(User.id).order_by(User.id))).scalars().all())

        updated = 0
        failed = 0
        for user_id in user_ids:
            try:
                await self.recompute(user_id)
                updated += 1
            except Exception:
                failed += 1
                reputation_recomputes.labels(status="error").inc()
                log.error("reputation_recompute_failed", user_id=user_id, exc_info=True)

        log.info("reputation_sweep_completed", updated=updated, failed=failed)
        return {"updated": updated, "failed": failed}

    async def manual_override(
        self, user_id: str, new_score: float, override_by: str, reason: str
    ) -> UserReputation:
        """Set a score directly and record the override in history.

        Raises:
            ReputationNotFoundError: If the user has no reputation record.
        """
        now = self._clock()
        score = round(max(0.0, min(100.0, new_score)), 2)
        async with self._session_factory() as session:
            rep = await session.get(UserReputation, user_id)
            if rep is None:
                raise ReputationNotFoundError(user_id)

            entry = {
                "date": now.isoformat(),
                "score": score,
                "reason": f"Manual override by admin: {reason}",
            }
            rep.score = score
            rep.tier = calculate_tier(score)
            rep.perks = calculate_perks(score)
            rep.restrictions = calculate_restrictions(score)
            rep.history = [*(rep.history or []), entry][-self._history_limit:]
            rep.manual_override_active = True
            rep.manual_override_by = override_by
            rep.manual_override_reason = reason
            rep.manual_override_at = now
            await session.commit()

        log.info("reputation_manual_override", user_id=user_id, score=score, override_by=override_by)
        return rep

    async def set_visibility(self, user_id: str, is_public: bool) -> UserReputation:
        async with self._session_factory() as session:
            rep = await session.get(UserReputation, user_id)
            if rep is None:
                raise ReputationNotFoundError(user_id)
            rep.visibility_public = is_public
            await session.commit()
        return rep

    async def _get_or_create(self, session: AsyncSession, user_id: str, user_name: str) -> UserReputation:
        rep = await session.get(UserReputation, user_id)
        if rep is None:
            rep = UserReputation(
                user_id=user_id,
                user_name=user_name,
                score=BASE_SCORE,
                tier="novice",
                last_calculated=self._clock(),
                metrics=_empty_metrics(),
                perks=calculate_perks(0),
                restrictions=calculate_restrictions(0),
                history=[],
                visibility_public=True,
                manual_override_active=False,
            )
            session.add(rep)
            await session.flush()
        return rep
