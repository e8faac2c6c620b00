"""Engine wiring: builds every component from ``Settings``."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from deedboard.core.config import Settings
from deedboard.services.aggregator import Aggregator
from deedboard.services.cache import CacheService, create_cache
from deedboard.services.clock import DayBoundaryResolver
from deedboard.services.cohorts import CohortResolver, StaticCohortResolver
from deedboard.services.events import EventStore, InMemoryEventStore
from deedboard.services.leaderboard import LeaderboardRanker
from deedboard.services.pending import PendingQueue, create_pending_queue
from deedboard.services.points import DeedService, InMemoryDeedCatalog
from deedboard.services.totals import InMemoryTotalsStore, TotalsStore
from deedboard.workers.recompute_scheduler import RecomputeScheduler

logger = logging.getLogger(__name__)


@dataclass
class Engine:
    settings: Settings
    resolver: DayBoundaryResolver
    event_store: EventStore
    totals_store: TotalsStore
    cohort_resolver: CohortResolver
    catalog: Any
    cache: CacheService | None
    aggregator: Aggregator
    ranker: LeaderboardRanker
    scheduler: RecomputeScheduler
    deed_service: DeedService
    pending: PendingQueue
    backend: str = "memory"


def build_engine(
    settings: Settings,
    pool: Any | None = None,
    cache: CacheService | None = None,
    backend: str | None = None,
) -> Engine:
    """Assemble the engine on the in-memory or Oracle backend.

    *backend* overrides ``settings.store_backend``; an Oracle backend uses
    *pool* or initializes the shared pool.
    """
    backend = backend or settings.store_backend
    resolver = DayBoundaryResolver.from_settings(settings)

    event_store: EventStore
    totals_store: TotalsStore
    cohort_resolver: CohortResolver
    if backend == "oracle":
        from deedboard.core.database import init_pool
        from deedboard.repositories.deed_catalog_repository import DeedCatalogRepository
        from deedboard.repositories.deed_event_repository import DeedEventRepository
        from deedboard.repositories.period_total_repository import PeriodTotalRepository
        from deedboard.repositories.user_cohort_repository import UserCohortRepository

        pool = pool if pool is not None else init_pool(settings)
        event_store = DeedEventRepository(pool=pool)
        totals_store = PeriodTotalRepository(pool=pool)
        cohort_resolver = UserCohortRepository(pool=pool)
        catalog: Any = DeedCatalogRepository(pool=pool)
    else:
        event_store = InMemoryEventStore()
        totals_store = InMemoryTotalsStore()
        cohort_resolver = StaticCohortResolver(allow_unknown=True)
        catalog = InMemoryDeedCatalog()

    if cache is None:
        cache = create_cache(settings.cache_backend, settings.redis_url)

    aggregator = Aggregator(
        resolver=resolver,
        event_store=event_store,
        totals_store=totals_store,
        user_lookup=cohort_resolver,
        retry_attempts=settings.store_retry_attempts,
        retry_backoff_seconds=settings.store_retry_backoff_seconds,
        max_future_skew=timedelta(seconds=settings.max_future_skew_seconds),
    )
    ranker = LeaderboardRanker(
        resolver=resolver,
        totals_store=totals_store,
        cohort_resolver=cohort_resolver,
        cache_service=cache,
        cache_ttl=settings.cache_ttl_seconds,
    )
    scheduler = RecomputeScheduler(
        aggregator,
        ranker=ranker,
        recompute_max_attempts=settings.recompute_max_attempts,
        tick_interval_seconds=settings.tick_interval_seconds,
        pending=create_pending_queue(settings.pending_backend, settings.redis_url),
    )
    deed_service = DeedService(
        resolver=resolver,
        scheduler=scheduler,
        event_store=event_store,
        catalog=catalog,
        custom_deed_points=settings.custom_deed_points,
    )

    logger.info(
        "Engine ready: backend=%s timezone=%s week_start=%s cache=%s pending=%s",
        backend,
        settings.reference_timezone,
        settings.first_day_of_week,
        settings.cache_backend if cache is not None else "none",
        settings.pending_backend,
    )
    return Engine(
        settings=settings,
        resolver=resolver,
        event_store=event_store,
        totals_store=totals_store,
        cohort_resolver=cohort_resolver,
        catalog=catalog,
        cache=cache,
        aggregator=aggregator,
        ranker=ranker,
        scheduler=scheduler,
        deed_service=deed_service,
        pending=scheduler.pending,
        backend=backend,
    )
