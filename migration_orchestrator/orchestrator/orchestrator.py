"""
Main migration orchestrator that wires the orchestration core together.

This module provides the MigrationOrchestrator class that builds the state
store, job registry, progress monitor, backup and rollback managers, the
batch and incremental engines and the scheduler from one
``OrchestratorConfig``, and owns their start/shutdown lifecycle.
"""

import logging
from datetime import timedelta
from pathlib import Path
from typing import Optional, Union

from migration_orchestrator.backup.manager import BackupManager
from migration_orchestrator.backup.rollback import RollbackManager
from migration_orchestrator.backup.storage import BackupStorage, RetentionPolicy
from migration_orchestrator.backup.strategies import default_strategies
from migration_orchestrator.clients.base import ChangeDetector, EntityClient, SourceChangeDetector
from migration_orchestrator.core.error_handler import ErrorHandler
from migration_orchestrator.models.config import OrchestratorConfig
from migration_orchestrator.monitoring.progress_monitor import ProgressMonitor
from migration_orchestrator.orchestrator.batch import BatchMigrationEngine, ItemProcessor
from migration_orchestrator.orchestrator.incremental import IncrementalMigrationEngine
from migration_orchestrator.orchestrator.scheduler import MigrationScheduler
from migration_orchestrator.persistence.job_store import JobStore
from migration_orchestrator.persistence.state_store import StateStore
from migration_orchestrator.utils.logging import setup_logging

logger = logging.getLogger(__name__)


class MigrationOrchestrator:
    """
    Entry point for running batch and incremental migrations.

    The components are exposed as attributes (``batch``, ``incremental``,
    ``scheduler``, ``monitor``, ``backups``, ``rollback``); this class
    only builds them and runs their periodic loops.
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        source_client: EntityClient,
        destination_client: EntityClient,
        change_detector: Optional[ChangeDetector] = None,
        item_processor: Optional[ItemProcessor] = None,
        configure_logging: bool = False
    ):
        self.config = config
        if configure_logging:
            setup_logging(
                level=config.logging.level,
                log_file=config.logging.log_file,
                rich_console=config.logging.rich_console,
                structured_logging=config.logging.structured_logging,
                log_rotation=config.logging.log_rotation,
            )

        self.source_client = source_client
        self.destination_client = destination_client
        self.error_handler = ErrorHandler()

        self.state_store = StateStore(config.root)
        self.job_store = JobStore()
        self.monitor = ProgressMonitor(
            self.state_store.logs_path,
            stall_threshold=timedelta(minutes=config.stall_threshold_minutes),
            health_check_interval=config.health_check_interval,
            structured_logs=config.logging.structured_logging,
        )

        self.backups = BackupManager(
            BackupStorage(self.state_store.backups_path, config.temp_path),
            strategies=default_strategies(source_client, destination_client, config.entity_types, self.state_store),
            retention_policy=RetentionPolicy(
                max_backups=config.retention.max_backups,
                max_age_days=config.retention.max_age_days,
            ),
        )
        self.rollback = RollbackManager(
            source_client,
            destination_client,
            config.entity_types,
            self.state_store.snapshots_path,
            error_handler=self.error_handler,
            network_retry_delay=config.network_retry_delay,
            resource_retry_delay=config.resource_retry_delay,
        )

        self.batch = BatchMigrationEngine(
            self.state_store,
            self.job_store,
            self.monitor,
            destination_client=destination_client,
            backup_manager=self.backups,
            rollback_manager=self.rollback,
            item_processor=item_processor,
            error_handler=self.error_handler,
        )
        self.incremental = IncrementalMigrationEngine(
            self.state_store,
            self.job_store,
            self.monitor,
            change_detector or SourceChangeDetector(source_client, config.entity_types),
            destination_client,
            backup_manager=self.backups,
            error_handler=self.error_handler,
            default_sync_interval=config.default_sync_interval,
            sync_retry_delay=config.sync_retry_delay,
            max_sync_cycle_retries=config.max_sync_cycle_retries,
            heartbeat_interval=config.heartbeat_interval,
        )
        self.scheduler = MigrationScheduler(
            self.state_store,
            self.incremental,
            tick_interval=config.scheduler_tick_interval,
        )
        self._started = False

    @classmethod
    def from_config_file(
        cls,
        config_path: Union[str, Path],
        source_client: EntityClient,
        destination_client: EntityClient,
        **kwargs
    ) -> "MigrationOrchestrator":
        """Build an orchestrator from a YAML or JSON configuration file."""
        return cls(OrchestratorConfig.from_file(config_path), source_client, destination_client, **kwargs)

    async def start(self):
        """Start the health check and scheduler loops."""
        if self._started:
            return
        await self.monitor.start()
        await self.scheduler.start()
        self._started = True
        logger.info(f"Migration orchestrator started (base path {self.state_store.base_path})")

    async def shutdown(self, timeout: Optional[float] = None):
        """Stop the loops and join every job worker."""
        await self.scheduler.stop()
        await self.job_store.shutdown(timeout)
        await self.monitor.stop()
        self._started = False
        logger.info("Migration orchestrator stopped")

    async def __aenter__(self) -> "MigrationOrchestrator":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.shutdown()
