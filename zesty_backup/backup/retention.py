"""
Retention policy enforcement for backups.

Selection is a pure function shared by local and remote cleanup:
1. entries older than max_age_days are candidates for deletion
2. the newest full backup and every incremental chained to it are kept
3. an expired entry that is the base of a kept entry is retained, so no
   surviving incremental ever loses its base
4. archives currently being uploaded or restored are retained

Deletion is best-effort per archive; failures are collected in the report.
"""

import io
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Collection, Dict, Iterable, List, Optional

from zesty_backup.errors import BackupError, ProviderError, RetentionError
from .manifest import ManifestEntry, ManifestStore, in_flight, is_archive_name, manifest_name


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetentionPolicy:
    max_age_days: int = 7


@dataclass
class RetentionPlan:
    delete: List[str] = field(default_factory=list)
    keep: List[str] = field(default_factory=list)
    # Expired entries kept only because they are a base, or in flight
    retained: List[str] = field(default_factory=list)


@dataclass
class RetentionReport:
    dry_run: bool = False
    deleted: List[str] = field(default_factory=list)
    would_delete: List[str] = field(default_factory=list)
    kept: List[str] = field(default_factory=list)
    retained: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors

    def raise_for_errors(self):
        if self.errors:
            failures = [f"{name}: {error}" for name, error in sorted(self.errors.items())]
            raise RetentionError(
                f"Failed to delete {len(failures)} archive(s): " + '; '.join(failures),
                failures=failures,
            )

    def to_dict(self) -> dict:
        return {
            'dry_run': self.dry_run,
            'deleted': self.deleted,
            'would_delete': self.would_delete,
            'kept': self.kept,
            'retained': self.retained,
            'errors': self.errors,
        }


def select_for_deletion(entries: Iterable[ManifestEntry], policy: RetentionPolicy, now: datetime,
                        in_flight_names: Collection[str] = ()) -> RetentionPlan:
    """
    Decide which archives to delete.

    Args:
        entries: Manifest entries, any order
        policy: Retention policy
        now: Reference time
        in_flight_names: Names that must not be deleted

    Returns:
        RetentionPlan with delete/keep lists ordered newest first
    """
    by_name = {entry.name: entry for entry in entries}
    ordered = sorted(by_name.values(), key=lambda e: e.name, reverse=True)
    cutoff = now - timedelta(days=policy.max_age_days)

    protected = set()
    newest_full = next((e for e in ordered if e.is_full), None)
    if newest_full is not None:
        protected.add(newest_full.name)
        # Incrementals are always newer than their base, so one pass from
        # oldest to newest picks up the whole chain
        for entry in reversed(ordered):
            if entry.base is not None and entry.base in protected:
                protected.add(entry.name)

    plan = RetentionPlan()
    keep = set()
    for entry in ordered:
        expired = entry.created_at < cutoff
        if not expired or entry.name in protected:
            keep.add(entry.name)
            plan.keep.append(entry.name)
        elif entry.name in in_flight_names:
            keep.add(entry.name)
            plan.retained.append(entry.name)

    # Walking newest first means every dependent is settled before its base
    for entry in ordered:
        if entry.name not in keep:
            continue
        base = entry.base
        while base is not None and base in by_name and base not in keep:
            keep.add(base)
            plan.retained.append(base)
            base = by_name[base].base

    plan.delete = [entry.name for entry in ordered if entry.name not in keep]
    return plan


class LocalRetentionManager:
    """Applies the retention policy to the local backup directory."""

    def __init__(self, backup_dir, policy: RetentionPolicy):
        self.store = ManifestStore(backup_dir)
        self.policy = policy

    def plan(self, now: Optional[datetime] = None) -> RetentionPlan:
        return select_for_deletion(
            self.store.entries(),
            self.policy,
            now or datetime.now(),
            in_flight.snapshot(),
        )

    def apply(self, dry_run: bool = False, now: Optional[datetime] = None) -> RetentionReport:
        """
        Delete expired local archives.

        Args:
            dry_run: Report what would be deleted without touching anything
            now: Reference time (default: now)

        Returns:
            RetentionReport; per-archive failures are in ``errors``
        """
        plan = self.plan(now)
        report = RetentionReport(dry_run=dry_run, kept=plan.keep, retained=plan.retained)

        for name in plan.delete:
            if dry_run:
                logger.info(f"Would delete: {name}")
                report.would_delete.append(name)
                continue
            # Re-check; an upload may have started since planning
            if name in in_flight:
                report.retained.append(name)
                continue
            try:
                self.store.delete(name)
            except OSError as e:
                logger.error(f"Failed to delete {name}: {e}")
                report.errors[name] = str(e)
                continue
            logger.info(f"Deleted: {name}")
            report.deleted.append(name)

        logger.info(
            f"Local retention complete. Deleted: {len(report.deleted)}, "
            f"Would delete: {len(report.would_delete)}, Kept: {len(report.kept)}, "
            f"Retained: {len(report.retained)}, Errors: {len(report.errors)}"
        )
        return report


class RemoteRetentionManager:
    """
    Applies the retention policy to the remote listing.

    Chain information comes from the uploaded manifest sidecars; a remote
    archive without one is a standalone full backup.
    """

    def __init__(self, gateway, policy: RetentionPolicy):
        self.gateway = gateway
        self.policy = policy

    def remote_entries(self) -> List[ManifestEntry]:
        objects = {obj.name: obj for obj in self.gateway.list()}
        entries = []
        for name, obj in sorted(objects.items()):
            if not is_archive_name(name):
                continue
            entry = None
            if manifest_name(name) in objects:
                buffer = io.BytesIO()
                try:
                    self.gateway.get(manifest_name(name), buffer)
                    entry = ManifestEntry.from_json(buffer.getvalue())
                except ProviderError as e:
                    logger.warning(f"Could not read remote manifest for {name}: {e}")
                except (ValueError, KeyError) as e:
                    logger.warning(f"Ignoring unreadable remote manifest for {name}: {e}")
            if entry is None:
                entry = ManifestEntry.standalone(name, obj.size)
            entry.size = obj.size
            entries.append(entry)
        return entries

    def apply(self, dry_run: bool = False, now: Optional[datetime] = None) -> RetentionReport:
        """
        Delete expired remote archives and their sidecars.

        Raises:
            ProviderError: If the remote listing fails
        """
        plan = select_for_deletion(self.remote_entries(), self.policy, now or datetime.now(), in_flight.snapshot())
        report = RetentionReport(dry_run=dry_run, kept=plan.keep, retained=plan.retained)

        for name in plan.delete:
            if dry_run:
                logger.info(f"Would delete remote: {name}")
                report.would_delete.append(name)
                continue
            try:
                self.gateway.delete(name)
                self.gateway.delete(manifest_name(name))
            except BackupError as e:
                logger.error(f"Failed to delete remote {name}: {e}")
                report.errors[name] = str(e)
                continue
            logger.info(f"Deleted remote: {name}")
            report.deleted.append(name)

        logger.info(
            f"Remote retention complete. Deleted: {len(report.deleted)}, "
            f"Kept: {len(report.kept)}, Errors: {len(report.errors)}"
        )
        return report
