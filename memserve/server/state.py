from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Union

from memserve.cache.file_cache import FileCache
from memserve.cache.entry import CacheEntry
from memserve.cache.ignore import IgnoreFilter
from memserve.cache.refresher import RefreshLoop
from memserve.cache.scanner import ReconcileStrategy, Reconciler, ScanReport
from memserve.config import MemserveConfig
from memserve.server.rate_limit import RateLimiter

logger = logging.getLogger(__name__)


class ServerState:
    """Everything one server process owns: root, cache, limiter, refresher.

    The cache is only reachable through ``lookup`` and the reconciler; the
    refresh loop and the request handlers share this object but never own
    the cache themselves.
    """

    def __init__(
        self,
        root: Union[str, Path],
        refresh_interval: float = 0.0,
        ignore: Optional[IgnoreFilter] = None,
        strategy: ReconcileStrategy = ReconcileStrategy.INCREMENTAL,
        rate_limiter: Optional[RateLimiter] = None,
        trust_forwarded_for: bool = False,
    ):
        self.root = Path(root)
        self._cache = FileCache()
        self.reconciler = Reconciler(self.root, self._cache, ignore=ignore, strategy=strategy)
        self.rate_limiter = rate_limiter
        self.trust_forwarded_for = trust_forwarded_for
        self.refresh_interval = refresh_interval
        self.refresher: Optional[RefreshLoop] = (
            RefreshLoop(self.reconciler.reconcile, refresh_interval) if refresh_interval > 0 else None
        )
        self.loaded = False

    @classmethod
    def from_config(cls, config: MemserveConfig) -> "ServerState":
        limiter = None
        if config.http.min_request_interval > 0:
            limiter = RateLimiter(
                config.http.min_request_interval,
                window=config.http.rate_limit_window,
            )
        return cls(
            root=config.cache.root,
            refresh_interval=config.cache.refresh_interval,
            ignore=IgnoreFilter.from_pattern(config.cache.ignore_pattern),
            strategy=ReconcileStrategy(config.cache.strategy),
            rate_limiter=limiter,
            trust_forwarded_for=config.http.trust_forwarded_for,
        )

    def load(self) -> ScanReport:
        """Initial synchronous full load. Raises MemserveError on failure."""
        report = self.reconciler.reconcile()
        self.loaded = True
        logger.info(f"Loaded {report.seen} files ({self._cache.total_bytes()} bytes) from {self.root}")
        return report

    def lookup(self, path: str) -> Optional[CacheEntry]:
        return self._cache.lookup(path)

    def allow(self, caller: str) -> bool:
        if self.rate_limiter is None:
            return True
        return self.rate_limiter.is_allowed(caller)

    @property
    def cached_files(self) -> int:
        return len(self._cache)

    async def start_refresh(self) -> None:
        if self.refresher is not None:
            await self.refresher.start()

    async def stop_refresh(self) -> None:
        if self.refresher is not None:
            await self.refresher.stop()
