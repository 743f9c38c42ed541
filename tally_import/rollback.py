"""
Rollback of an imported batch.

Deletes what the batch created, newest dependencies first:

    stock movements -> journal entries -> opening balances      (transactions)
    ledger targets -> cost centres -> cost categories -> godowns ->
    stock items -> stock groups -> units -> currencies           (masters)

A master is only deleted when nothing else references it any more;
otherwise it is kept and reported. The batch itself is never deleted:
it moves to ``rolled_back`` with an audit event.
"""
from __future__ import annotations
from typing import Optional
from loguru import logger

from .errors import RollbackNotAllowedError, TargetSystemError
from .models import (
    Batch,
    BatchStatus,
    RollbackPreview,
    RollbackRequest,
    RollbackSummary,
    TargetKind,
)
from .models.batch import RetainedRecord
from .repository import TargetRepository
from .storage import BatchStore

TRANSACTION_DELETE_ORDER: tuple[TargetKind, ...] = (
    TargetKind.STOCK_MOVEMENT,
    TargetKind.JOURNAL_ENTRY,
    TargetKind.OPENING_BALANCE,
)

MASTER_DELETE_ORDER: tuple[TargetKind, ...] = (
    TargetKind.CUSTOMER,
    TargetKind.VENDOR,
    TargetKind.BANK_ACCOUNT,
    TargetKind.ACCOUNT,
    TargetKind.COST_CENTRE,
    TargetKind.COST_CATEGORY,
    TargetKind.GODOWN,
    TargetKind.STOCK_ITEM,
    TargetKind.STOCK_GROUP,
    TargetKind.UNIT,
    TargetKind.CURRENCY,
)

ROLLBACK_STATUSES = frozenset({BatchStatus.COMPLETED, BatchStatus.FAILED})


class RollbackManager:
    def __init__(self, repository: TargetRepository, store: BatchStore):
        self.repository = repository
        self.store = store

    @staticmethod
    def blocking_reason(batch: Batch) -> Optional[str]:
        if batch.status == BatchStatus.ROLLED_BACK:
            return "Batch has already been rolled back"
        if batch.status == BatchStatus.IMPORTING:
            return "Batch is still importing; cancel it, or mark it interrupted if its import stopped"
        if batch.status not in ROLLBACK_STATUSES:
            return f"Batch is {batch.status.value}; nothing has been imported"
        return None

    def preview(self, batch_id: str) -> RollbackPreview:
        """What a rollback would touch, without deleting anything."""
        batch = self.store.get(batch_id)
        reason = self.blocking_reason(batch)
        records = {}
        if reason is None:
            for kind in TRANSACTION_DELETE_ORDER + MASTER_DELETE_ORDER:
                count = len(self.repository.list_by_batch_tag(batch.id, kind))
                if count:
                    records[kind.value] = count
        return RollbackPreview(batch_id=batch.id, can_rollback=reason is None, blocking_reason=reason, records=records)

    def rollback(self, batch_id: str, request: Optional[RollbackRequest] = None) -> RollbackSummary:
        """
        Roll back a completed or failed batch.

        Raises:
            RollbackNotAllowedError: If the batch is importing, not yet
                imported, or already rolled back
        """
        request = request or RollbackRequest()
        batch = self.store.get(batch_id)
        reason = self.blocking_reason(batch)
        if reason:
            raise RollbackNotAllowedError(f"Batch {batch.batch_number}: {reason}")

        logger.info(f"Rolling back batch {batch.batch_number}: {request.reason}")
        summary = RollbackSummary(batch_id=batch.id)

        if request.delete_transactions:
            for kind in TRANSACTION_DELETE_ORDER:
                try:
                    deleted = self.repository.delete_by_batch_tag(batch.id, kind)
                except TargetSystemError as e:
                    summary.errors.append(f"Deleting {kind.value} records failed: {e}")
                    logger.error(f"Rollback of {batch.batch_number}: deleting {kind.value} failed: {e}")
                    continue
                if deleted:
                    summary.deleted[kind.value] = deleted
                    logger.info(f"Deleted {deleted} {kind.value} records")

        if request.delete_masters:
            if summary.errors:
                summary.warnings.append("Masters were kept because deleting transactions failed")
            else:
                for kind in MASTER_DELETE_ORDER:
                    self._delete_masters(batch, kind, summary)

        if summary.errors:
            batch.add_audit_event(
                "rollback_failed",
                request.reason,
                deleted=summary.deleted,
                errors=summary.errors,
            )
            self.store.save(batch)
            logger.error(f"Rollback of {batch.batch_number} incomplete: {len(summary.errors)} errors")
            return summary

        batch.transition(BatchStatus.ROLLED_BACK)
        batch.add_audit_event(
            "rollback",
            request.reason,
            deleted=summary.deleted,
            retained=[r.model_dump(mode="json") for r in summary.retained],
            warnings=summary.warnings,
            delete_masters=request.delete_masters,
            delete_transactions=request.delete_transactions,
        )
        self.store.save(batch)
        logger.success(
            f"Batch {batch.batch_number} rolled back: {summary.total_deleted} records deleted, "
            f"{len(summary.retained)} retained"
        )
        return summary

    def _delete_masters(self, batch: Batch, kind: TargetKind, summary: RollbackSummary):
        try:
            remaining = self.repository.list_by_batch_tag(batch.id, kind)
        except TargetSystemError as e:
            summary.errors.append(f"Listing {kind.value} records failed: {e}")
            return

        deleted = 0
        # Parents can be referenced by children of the same kind, so repeat until no progress
        while remaining:
            still_referenced = []
            for target_id in remaining:
                try:
                    if self.repository.is_referenced(kind, target_id):
                        still_referenced.append(target_id)
                        continue
                    self.repository.delete(kind, target_id)
                    deleted += 1
                except TargetSystemError as e:
                    summary.errors.append(f"Deleting {kind.value} {target_id} failed: {e}")
            if len(still_referenced) == len(remaining):
                break
            remaining = still_referenced
        else:
            remaining = []

        for target_id in remaining:
            message = f"{kind.value} {target_id} kept: still referenced by records outside this rollback"
            summary.retained.append(RetainedRecord(kind=kind, target_id=target_id, reason=message))
            summary.warnings.append(message)
            logger.warning(message)
        if deleted:
            summary.deleted[kind.value] = deleted
