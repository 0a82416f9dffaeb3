"""Wiring of the settlement components and their background threads."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.orm import sessionmaker

from settlement.config import AGGREGATOR_SETTINGS, DEFENSE_SETTINGS, ONCHAIN_SETTINGS, WORKER_SETTINGS
from settlement.database import SessionLocal
from settlement.jobs.aggregator import LedgerAggregator
from settlement.jobs.collaborators import LoggingCollaborators, PostTradeCollaborators
from settlement.jobs.job_store import JobStore
from settlement.jobs.post_trade import PostTradeProcessor
from settlement.jobs.scheduler import PeriodicRunner
from settlement.jobs.settlement_worker import SettlementWorker
from settlement.services.defense import RevenueDefenseService, SourceRecordProvider
from settlement.services.onchain_retry import (
    OnChainRetryWorker,
    PriceConverter,
    SettlementChainClient,
    StaticPriceConverter,
    UnconfiguredChainClient,
)
from settlement.services.revenue_recorder import RevenueRecorder
from settlement.utils import get_logger
from settlement.utils.log_throttle import FailureLogThrottle

logger = get_logger(__name__)


@dataclass
class SettlementRuntime:
    store: JobStore
    recorder: RevenueRecorder
    worker: SettlementWorker
    aggregator: LedgerAggregator
    onchain: OnChainRetryWorker
    defense: RevenueDefenseService
    runners: list[PeriodicRunner] = field(default_factory=list)

    def start(self) -> None:
        self.recorder.ensure_streams()
        self.worker.start()
        self.runners = [
            PeriodicRunner("revenue-defense", self.defense.run_defense_checks, DEFENSE_SETTINGS["interval_seconds"]),
        ]
        if AGGREGATOR_SETTINGS["enabled"]:
            self.runners.append(
                PeriodicRunner("ledger-aggregator", self.aggregator.run, AGGREGATOR_SETTINGS["interval_seconds"])
            )
        else:
            logger.info("Ledger aggregation disabled in this process")
        if ONCHAIN_SETTINGS["enabled"]:
            self.runners.append(
                PeriodicRunner("onchain-retry", self.onchain.process_batch, ONCHAIN_SETTINGS["poll_interval_seconds"])
            )
        else:
            logger.info("On-chain delivery disabled; retry worker not started")
        for runner in self.runners:
            runner.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        """Signal every thread, then join each for at most ``timeout`` seconds."""
        if timeout is None:
            timeout = float(WORKER_SETTINGS["shutdown_timeout_seconds"])
        self.worker.stop()
        for runner in self.runners:
            runner.stop()
        self.worker.join(timeout)
        for runner in self.runners:
            runner.join(timeout)
        lingering = [r.name for r in self.runners if r.alive]
        if self.worker.alive:
            lingering.append("settlement-worker")
        if lingering:
            logger.warning("Background threads still running after shutdown timeout", threads=lingering, timeout=timeout)


def build_runtime(
    session_factory: Optional[sessionmaker] = None,
    *,
    collaborators: Optional[PostTradeCollaborators] = None,
    converter: Optional[PriceConverter] = None,
    chain_client: Optional[SettlementChainClient] = None,
    source_provider: Optional[SourceRecordProvider] = None,
    throttle: Optional[FailureLogThrottle] = None,
) -> SettlementRuntime:
    session_factory = session_factory or SessionLocal
    store = JobStore(session_factory)
    recorder = RevenueRecorder(session_factory)
    processor = PostTradeProcessor(recorder, collaborators or LoggingCollaborators())
    return SettlementRuntime(
        store=store,
        recorder=recorder,
        worker=SettlementWorker(store, processor),
        aggregator=LedgerAggregator(session_factory),
        onchain=OnChainRetryWorker(
            converter or StaticPriceConverter(),
            chain_client or UnconfiguredChainClient(),
            session_factory,
            throttle=throttle,
        ),
        defense=RevenueDefenseService(session_factory, source_provider=source_provider),
    )


__all__ = ["SettlementRuntime", "build_runtime"]
