"""Durable job state and the in-memory job registry."""

from migration_orchestrator.persistence.job_store import JobHandle, JobStore
from migration_orchestrator.persistence.state_store import StateStore

__all__ = ["JobHandle", "JobStore", "StateStore"]
