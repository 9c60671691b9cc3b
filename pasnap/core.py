# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Pasnap Core - shared result types and the run context.

Pipeline steps report StepOutcome values instead of booleans; the
pipelines fold them into an Outcomes collection that decides between
"completed" and "completed with errors", and whether a mandatory
category was lost entirely.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Iterable, List

import structlog

from pasnap.adapters.protocols import ContainerRuntime, DatabaseClient, Repository
from pasnap.config import PasnapConfig
from pasnap.detect import DeploymentProfile

if TYPE_CHECKING:
    from pasnap.journal import Journal

logger = structlog.get_logger()

# Categories without which a snapshot must not be uploaded
MANDATORY_CATEGORIES = ("databases", "volumes")


class StepStatus(str, Enum):
    """Outcome of one pipeline step or component."""

    SUCCESS = "success"
    SOFT_FAILURE = "soft_failure"  # Logged, flag downgraded, pipeline continues
    FATAL = "fatal"  # Pipeline stops
    SKIPPED = "skipped"  # Not applicable or not present; not an error


class RunStatus(str, Enum):
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class StepOutcome:
    """Typed result of one component of a pipeline."""

    category: str  # databases, volumes, config, users, home, settings
    component: str
    status: StepStatus
    reason: str = ""
    size: int = 0

    @classmethod
    def success(cls, category: str, component: str, reason: str = "", size: int = 0) -> "StepOutcome":
        return cls(category, component, StepStatus.SUCCESS, reason, size)

    @classmethod
    def soft_failure(cls, category: str, component: str, reason: str) -> "StepOutcome":
        return cls(category, component, StepStatus.SOFT_FAILURE, reason)

    @classmethod
    def skipped(cls, category: str, component: str, reason: str) -> "StepOutcome":
        return cls(category, component, StepStatus.SKIPPED, reason)

    @property
    def failed(self) -> bool:
        return self.status in (StepStatus.SOFT_FAILURE, StepStatus.FATAL)


@dataclass
class Outcomes:
    """Ordered per-component outcomes of one run."""

    items: List[StepOutcome] = field(default_factory=list)

    def add(self, outcome: StepOutcome) -> StepOutcome:
        self.items.append(outcome)
        log = logger.warning if outcome.failed else logger.info
        log(
            "component_" + outcome.status.value,
            category=outcome.category,
            component=outcome.component,
            reason=outcome.reason or None,
            size=outcome.size or None,
        )
        return outcome

    def extend(self, outcomes: Iterable[StepOutcome]) -> None:
        for outcome in outcomes:
            self.add(outcome)

    def in_category(self, category: str) -> List[StepOutcome]:
        return [o for o in self.items if o.category == category]

    def succeeded(self, category: str) -> bool:
        return any(o.status == StepStatus.SUCCESS for o in self.in_category(category))

    def category_failed(self, category: str) -> bool:
        """True when nothing in category succeeded and at least one item failed."""
        items = self.in_category(category)
        return not self.succeeded(category) and any(o.failed for o in items)

    @property
    def has_failures(self) -> bool:
        return any(o.failed for o in self.items)

    def present_categories(self, order: Iterable[str]) -> List[str]:
        return [c for c in order if self.succeeded(c)]


@dataclass
class SnapshotResult:
    """Result of a snapshot run."""

    operation_id: str  # ULID
    status: RunStatus
    snapshot_id: str | None
    outcomes: List[StepOutcome]
    bundle_size: int
    duration_seconds: float
    upload_seconds: float = 0.0
    tags: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    host_snapshot_count: int | None = None


@dataclass
class RestoreResult:
    """Result of a restore run."""

    operation_id: str
    status: RunStatus
    snapshot_id: str
    outcomes: List[StepOutcome] = field(default_factory=list)
    steps: List[str] = field(default_factory=list)
    services_running: bool | None = None
    duration_seconds: float = 0.0


@dataclass
class RunContext:
    """Everything a pipeline needs, resolved once per invocation."""

    config: PasnapConfig
    profile: DeploymentProfile
    runtime: ContainerRuntime
    repository: Repository
    database: DatabaseClient
    journal: "Journal"


def build_context(config: PasnapConfig, profile: DeploymentProfile) -> RunContext:
    """
    Wire the production adapters for an installation.

    Args:
        config: Loaded configuration
        profile: Detected deployment profile

    Returns:
        RunContext backed by docker, restic and the MySQL client
    """
    from pasnap.adapters.docker import DockerRuntime
    from pasnap.adapters.mysql import MySQLClient
    from pasnap.adapters.restic import ResticRepository
    from pasnap.journal import Journal

    runtime = DockerRuntime(profile.install_root, config)
    return RunContext(
        config=config,
        profile=profile,
        runtime=runtime,
        repository=ResticRepository(config),
        database=MySQLClient(runtime, config),
        journal=Journal(config.journal_path),
    )
