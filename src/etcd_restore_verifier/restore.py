from __future__ import annotations

from contextlib import contextmanager
from dataclasses import replace
from typing import Iterator

import structlog

from .descriptor import with_backup, with_restore
from .lifecycle import ClusterLease, ClusterLifecycleController, ReleaseCallback
from .models import BackupPolicy, ClusterDescriptor, MemberEndpoint, RestorePolicy

DEFAULT_RESTORE_BASE_SECONDS = 60
DEFAULT_CLONE_EXTRA_SECONDS = 60

logger = structlog.get_logger(__name__)


def calculate_restore_wait_time(
    needs_clone: bool,
    *,
    base_seconds: int = DEFAULT_RESTORE_BASE_SECONDS,
    clone_extra_seconds: int = DEFAULT_CLONE_EXTRA_SECONDS,
) -> int:
    """Return how long to wait for a restored cluster to converge.

    Restoring under a different name makes the operator copy the backup to a
    storage location bound to the new name before seeding the first member.
    """
    if base_seconds <= 0:
        raise ValueError("base_seconds must be positive")
    if clone_extra_seconds <= 0:
        raise ValueError("clone_extra_seconds must be positive")
    if needs_clone:
        return base_seconds + clone_extra_seconds
    return base_seconds


def build_restore_descriptor(
    original: ClusterDescriptor,
    *,
    needs_clone: bool,
    backup_cluster_name: str,
    backup_policy: BackupPolicy,
) -> ClusterDescriptor:
    if not backup_cluster_name.strip():
        raise ValueError("backup_cluster_name must not be empty")

    descriptor = original
    if not needs_clone:
        # Same name: the operator finds the existing backup bound to this name.
        descriptor = replace(descriptor, name=backup_cluster_name, generate_name=None)
    elif descriptor.name == backup_cluster_name:
        raise ValueError("a cloning restore must not reuse the backup source name")

    # The restored cluster owns its backups; deleting it must clean them up.
    restored_policy = replace(backup_policy, cleanup_backups_on_cluster_delete=True)
    descriptor = with_backup(replace(descriptor, restore=None), restored_policy)
    return with_restore(
        descriptor,
        RestorePolicy(backup_cluster_name=backup_cluster_name, storage_type=backup_policy.storage_type),
    )


class RestoreOrchestrator:
    def __init__(
        self,
        *,
        lifecycle: ClusterLifecycleController,
        base_timeout_seconds: int = DEFAULT_RESTORE_BASE_SECONDS,
        clone_extra_seconds: int = DEFAULT_CLONE_EXTRA_SECONDS,
    ) -> None:
        self.lifecycle = lifecycle
        self.base_timeout_seconds = base_timeout_seconds
        self.clone_extra_seconds = clone_extra_seconds

    def wait_time(self, needs_clone: bool) -> int:
        return calculate_restore_wait_time(
            needs_clone,
            base_seconds=self.base_timeout_seconds,
            clone_extra_seconds=self.clone_extra_seconds,
        )

    @contextmanager
    def execute(
        self,
        descriptor: ClusterDescriptor,
        *,
        needs_clone: bool,
        release: ReleaseCallback | None = None,
    ) -> Iterator[tuple[ClusterLease, list[MemberEndpoint]]]:
        if descriptor.restore is None:
            raise ValueError("restore execution requires a descriptor with a restore policy")

        timeout_seconds = self.wait_time(needs_clone)
        with self.lifecycle.provisioned(descriptor, release=release) as lease:
            logger.info(
                "restore_submitted",
                cluster=lease.name,
                source=descriptor.restore.backup_cluster_name,
                needs_clone=needs_clone,
                timeout_seconds=timeout_seconds,
            )
            endpoints = self.lifecycle.await_size(lease.name, descriptor.size, timeout_seconds)
            logger.info("restore_converged", cluster=lease.name, members=len(endpoints))
            yield lease, endpoints
