"""
Commit engine: writes a parsed export into the target system.

Record types are committed in a fixed dependency order:

    Currencies -> Units -> Stock Groups -> Stock Items -> Godowns ->
    Cost Categories -> Cost Centres -> Ledgers -> Opening Balances -> Vouchers

Every record ends in exactly one of imported / skipped / failed /
suspense. A record that fails is written to the batch and the run moves
on; only an unreachable target system (after retries), an invalid
mapping configuration or an operator cancel stops the batch.

Each voucher is classified (when ambiguous), mapped, checked for balance
and only then posted as one journal entry. Unbalanced vouchers are never
posted and never corrected.
"""
from __future__ import annotations
import threading
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Optional
from loguru import logger
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .classifier import ClassifierRules, DEFAULT_RULES, classify_payment, is_ambiguous
from .config import ImportEngineConfig
from .errors import (
    ImportCancelledError,
    MappingConfigurationError,
    RecordTimeoutError,
    TargetSystemError,
    TargetUnavailableError,
    TransientTargetError,
)
from .mapper import LedgerMapper, MappingConfiguration, MappingDecision, MappingSource
from .models import (
    Batch,
    BatchStatus,
    GroupTable,
    ImportRequest,
    ImportType,
    Ledger,
    MappingResult,
    MastersCollection,
    Outcome,
    ReconciliationSummary,
    RecordType,
    SuspenseItem,
    TargetKind,
    Voucher,
)
from .models.masters import MasterRecord
from .progress import (
    PHASE_MASTERS,
    PHASE_OPENING_BALANCES,
    PHASE_VOUCHERS,
    ProgressSink,
    ProgressTracker,
)
from .repository import TargetRepository

SUSPENSE_EXTERNAL_REF = "tally-suspense"

# Target kind created for each master record type
MASTER_KINDS: dict[RecordType, TargetKind] = {
    RecordType.CURRENCY: TargetKind.CURRENCY,
    RecordType.UNIT: TargetKind.UNIT,
    RecordType.STOCK_GROUP: TargetKind.STOCK_GROUP,
    RecordType.STOCK_ITEM: TargetKind.STOCK_ITEM,
    RecordType.GODOWN: TargetKind.GODOWN,
    RecordType.COST_CATEGORY: TargetKind.COST_CATEGORY,
    RecordType.COST_CENTRE: TargetKind.COST_CENTRE,
}

MASTER_COLLECTIONS: dict[RecordType, str] = {
    RecordType.CURRENCY: "currencies",
    RecordType.UNIT: "units",
    RecordType.STOCK_GROUP: "stock_groups",
    RecordType.STOCK_ITEM: "stock_items",
    RecordType.GODOWN: "godowns",
    RecordType.COST_CATEGORY: "cost_categories",
    RecordType.COST_CENTRE: "cost_centres",
    RecordType.LEDGER: "ledgers",
}

# Used when parallelism > 1. Types in one stage only depend on earlier stages.
MASTER_STAGES: tuple[tuple[RecordType, ...], ...] = (
    (RecordType.CURRENCY, RecordType.UNIT, RecordType.STOCK_GROUP, RecordType.GODOWN, RecordType.COST_CATEGORY),
    (RecordType.STOCK_ITEM, RecordType.COST_CENTRE, RecordType.LEDGER),
)

SEQUENTIAL_MASTER_ORDER: tuple[RecordType, ...] = (
    RecordType.CURRENCY,
    RecordType.UNIT,
    RecordType.STOCK_GROUP,
    RecordType.STOCK_ITEM,
    RecordType.GODOWN,
    RecordType.COST_CATEGORY,
    RecordType.COST_CENTRE,
    RecordType.LEDGER,
)


def _parent_first(records: list[MasterRecord]) -> list[MasterRecord]:
    """Order records so a parent in the same list always comes before its children."""
    by_name = {r.name.lower(): r for r in records}

    def depth(record: MasterRecord) -> int:
        seen: set[str] = set()
        d = 0
        parent = record.parent
        while parent and parent.lower() in by_name and parent.lower() not in seen:
            seen.add(parent.lower())
            d += 1
            parent = by_name[parent.lower()].parent
        return d

    return sorted(records, key=depth)


@dataclass
class _LedgerTarget:
    kind: TargetKind
    target_id: str
    decision: MappingDecision


@dataclass
class _Run:
    """State of one import run."""

    batch: Batch
    masters: MastersCollection
    vouchers: list[Voucher]
    request: ImportRequest
    mapper: LedgerMapper
    groups: GroupTable
    tracker: ProgressTracker
    cancel_event: threading.Event
    lock: threading.RLock = field(default_factory=threading.RLock)
    suspense_lock: threading.Lock = field(default_factory=threading.Lock)
    targets: dict[TargetKind, dict[str, str]] = field(default_factory=lambda: defaultdict(dict))
    ledger_targets: dict[str, Optional[_LedgerTarget]] = field(default_factory=dict)
    ledger_guids: dict[str, str] = field(default_factory=dict)
    suspense_account_id: Optional[str] = None
    since_checkpoint: int = 0
    abandoned_calls: int = 0
    resume: bool = False


class Importer:
    """
    Commits one batch.

    Usage:
        importer = Importer(repository, config, progress_sink)
        summary = importer.run(batch, masters, vouchers, mapping, ImportRequest())
    """

    def __init__(
        self,
        repository: TargetRepository,
        config: Optional[ImportEngineConfig] = None,
        progress_sink: Optional[ProgressSink] = None,
        checkpoint: Optional[Callable[[Batch], None]] = None,
        rules: ClassifierRules = DEFAULT_RULES,
    ):
        self.repository = repository
        self.config = config or ImportEngineConfig.from_env()
        self.progress_sink = progress_sink
        self.checkpoint = checkpoint
        self.rules = rules
        self._trackers: dict[str, ProgressTracker] = {}

    def tracker_for(self, batch_id: str) -> Optional[ProgressTracker]:
        return self._trackers.get(batch_id)

    # Entry point

    def run(
        self,
        batch: Batch,
        masters: MastersCollection,
        vouchers: list[Voucher],
        mapping: MappingConfiguration,
        request: Optional[ImportRequest] = None,
        cancel_event: Optional[threading.Event] = None,
        resume: bool = False,
    ) -> ReconciliationSummary:
        """
        Import masters and vouchers for a batch that is already ``importing``.

        The batch ends ``completed`` or ``failed``; the reconciliation
        summary is returned either way. With ``resume`` the batch continues
        an interrupted run: records it committed before are counted as
        imported again instead of being created twice.
        """
        request = request or ImportRequest()
        cancel_event = cancel_event or threading.Event()
        if batch.status != BatchStatus.IMPORTING:
            batch.transition(BatchStatus.IMPORTING)
        batch.reset_run_state()

        tracker = ProgressTracker(batch.id, self._phase_totals(masters, vouchers, request))
        self._trackers[batch.id] = tracker

        logger.info(
            f"Starting {batch.import_type.value} import of batch {batch.batch_number} "
            f"({tracker.total} records)"
        )
        try:
            groups = masters.group_table()
            run = _Run(
                batch=batch,
                masters=masters,
                vouchers=vouchers,
                request=request,
                mapper=LedgerMapper(mapping, groups),
                groups=groups,
                tracker=tracker,
                cancel_event=cancel_event,
                resume=resume,
            )
            run.ledger_guids = {ledger.name.lower(): ledger.guid for ledger in masters.ledgers}

            self._import_masters(run)
            self._import_opening_balances(run)
            self._import_vouchers(run)

            if run.abandoned_calls:
                logger.warning(f"Batch {batch.batch_number}: {run.abandoned_calls} target calls abandoned after timing out")
            batch.transition(BatchStatus.COMPLETED)
            logger.success(
                f"Batch {batch.batch_number} completed: {batch.totals.imported} imported, "
                f"{batch.totals.skipped} skipped, {batch.totals.failed} failed, "
                f"{batch.totals.suspense} in suspense"
            )
        except ImportCancelledError:
            batch.error_message = "Cancelled by operator"
            batch.transition(BatchStatus.FAILED)
            logger.warning(f"Batch {batch.batch_number} cancelled by operator")
        except MappingConfigurationError as e:
            batch.error_message = str(e)
            batch.transition(BatchStatus.FAILED)
            logger.error(f"Batch {batch.batch_number} failed: {e}")
        except TargetUnavailableError as e:
            batch.error_message = f"Target system unavailable: {e}"
            batch.transition(BatchStatus.FAILED)
            logger.error(f"Batch {batch.batch_number} failed: {batch.error_message}")
        except Exception as e:
            batch.error_message = f"Unexpected error: {e}"
            batch.transition(BatchStatus.FAILED)
            logger.exception(f"Batch {batch.batch_number} failed")
        finally:
            self._publish(batch, tracker)
            self._trackers.pop(batch.id, None)

        summary = batch.reconciliation()
        if summary.imbalance:
            logger.warning(f"Batch {batch.batch_number} imbalance: {summary.imbalance}")
        return summary

    @staticmethod
    def _phase_totals(masters: MastersCollection, vouchers: list[Voucher], request: ImportRequest) -> dict[str, int]:
        master_total = sum(
            len(getattr(masters, MASTER_COLLECTIONS[rt])) for rt in SEQUENTIAL_MASTER_ORDER if request.includes(rt)
        )
        opening_total = 0
        if request.includes(RecordType.OPENING_BALANCE):
            opening_total = sum(1 for ledger in masters.ledgers if ledger.opening_balance != 0)
        voucher_total = 0
        if request.includes(RecordType.VOUCHER):
            voucher_total = sum(1 for v in vouchers if request.in_window(v.date))
        return {
            PHASE_MASTERS: master_total,
            PHASE_OPENING_BALANCES: opening_total,
            PHASE_VOUCHERS: voucher_total,
        }

    # Progress and outcome bookkeeping

    def _publish(self, batch: Batch, tracker: ProgressTracker):
        batch.progress = tracker.snapshot(batch.status)
        if self.progress_sink is not None:
            self.progress_sink.publish(batch.id, batch.progress)
        if self.checkpoint is not None:
            self.checkpoint(batch)

    def _outcome(
        self,
        run: _Run,
        record_type: RecordType,
        phase: str,
        outcome: Outcome,
        item: str,
        error: Optional[str] = None,
    ):
        with run.lock:
            run.batch.record_outcome(record_type, outcome)
            run.tracker.record(phase, outcome != Outcome.FAILED, item, error)
            run.since_checkpoint += 1
            if run.since_checkpoint >= self.config.progress_every:
                run.since_checkpoint = 0
                # Under the lock so the checkpoint never sees a half-updated batch
                self._publish(run.batch, run.tracker)

    def _fail(
        self,
        run: _Run,
        record_type: RecordType,
        phase: str,
        code: str,
        message: str,
        name: str,
        guid: Optional[str] = None,
    ):
        with run.lock:
            run.batch.add_error(record_type, code, message, source_guid=guid, source_name=name)
        logger.warning(f"{record_type.value} '{name}' failed [{code}]: {message}")
        self._outcome(run, record_type, phase, Outcome.FAILED, name, f"{code}: {message}")

    def _check_cancel(self, run: _Run):
        if run.cancel_event.is_set():
            raise ImportCancelledError(run.batch.id)

    # Target calls: timeout per attempt, retries for transient failures

    def _call(self, run: _Run, description: str, fn: Callable, *args, **kwargs):
        retrying = Retrying(
            wait=wait_exponential(multiplier=self.config.retry_delay, max=30),
            stop=stop_after_attempt(self.config.retry_attempts),
            retry=retry_if_exception_type(TransientTargetError),
            reraise=True,
            before_sleep=lambda retry_state: logger.warning(
                f"Retrying {description} (attempt {retry_state.attempt_number})..."
            ),
        )
        return retrying(self._with_timeout, run, description, fn, *args, **kwargs)

    def _with_timeout(self, run: _Run, description: str, fn: Callable, *args, **kwargs):
        """
        Run one target call on its own daemon thread.

        A call that overruns is abandoned rather than cancelled (a running
        call cannot be interrupted); it holds only its own thread, so later
        calls start immediately.
        """
        outcome: dict[str, Any] = {}

        def call():
            try:
                outcome["result"] = fn(*args, **kwargs)
            except Exception as e:
                outcome["error"] = e

        worker = threading.Thread(target=call, name=f"tally-import-{run.batch.batch_number}-call", daemon=True)
        worker.start()
        worker.join(self.config.record_timeout)
        if worker.is_alive():
            with run.lock:
                run.abandoned_calls += 1
            raise RecordTimeoutError(f"{description} did not finish within {self.config.record_timeout}s")
        if "error" in outcome:
            raise outcome["error"]
        return outcome.get("result")

    def _guarded(self, run: _Run, record_type: RecordType, phase: str, name: str, guid: Optional[str], fn: Callable[[], None]):
        """Run one record's work, turning per-record failures into batch errors."""
        self._check_cancel(run)
        try:
            fn()
        except (TargetUnavailableError, MappingConfigurationError, ImportCancelledError):
            raise
        except RecordTimeoutError as e:
            self._fail(run, record_type, phase, "TIMEOUT", str(e), name, guid)
        except TargetSystemError as e:
            self._fail(run, record_type, phase, "TARGET_ERROR", str(e), name, guid)
        except Exception as e:
            logger.exception(f"Unexpected error importing {record_type.value} '{name}'")
            self._fail(run, record_type, phase, "UNEXPECTED_ERROR", f"{type(e).__name__}: {e}", name, guid)

    def _existing(self, run: _Run, kind: TargetKind, source_key: str) -> tuple[Optional[str], Outcome]:
        """
        Idempotency lookup: same batch for full imports, any batch for incremental ones.

        Returns the existing target id (or None) and the outcome to record
        for it. A record this batch committed before it was interrupted
        counts as imported when the batch is resumed; anything else already
        in the target is skipped.
        """
        description = f"lookup of {kind.value} {source_key}"
        if run.resume or run.batch.import_type == ImportType.FULL:
            own = self._call(run, description, self.repository.find_by_external_ref, kind, source_key, run.batch.id)
            if own:
                return own, Outcome.IMPORTED if run.resume else Outcome.SKIPPED
        if run.batch.import_type == ImportType.INCREMENTAL:
            other = self._call(run, description, self.repository.find_by_external_ref, kind, source_key, None)
            if other:
                return other, Outcome.SKIPPED
        return None, Outcome.IMPORTED

    # Masters

    def _import_masters(self, run: _Run):
        run.tracker.begin_phase(PHASE_MASTERS)
        if self.config.parallelism <= 1:
            for record_type in SEQUENTIAL_MASTER_ORDER:
                self._import_master_type(run, record_type)
        else:
            with ThreadPoolExecutor(max_workers=self.config.parallelism, thread_name_prefix="tally-import-stage") as pool:
                for stage in MASTER_STAGES:
                    futures = [pool.submit(self._import_master_type, run, rt) for rt in stage]
                    # result() re-raises batch-level failures from the worker
                    for future in futures:
                        future.result()
        self._publish(run.batch, run.tracker)

    def _import_master_type(self, run: _Run, record_type: RecordType):
        if not run.request.includes(record_type):
            return
        records = list(getattr(run.masters, MASTER_COLLECTIONS[record_type]))
        if not records:
            return
        if record_type in (RecordType.STOCK_GROUP, RecordType.GODOWN, RecordType.COST_CENTRE):
            records = _parent_first(records)
        elif record_type == RecordType.UNIT:
            records = sorted(records, key=lambda u: not u.is_simple_unit)

        logger.info(f"Importing {len(records)} {record_type.value} records")
        for record in records:
            if record_type == RecordType.LEDGER:
                work = lambda r=record: self._import_ledger(run, r)
            else:
                work = lambda r=record: self._import_simple_master(run, record_type, r)
            self._guarded(run, record_type, PHASE_MASTERS, record.name, record.guid, work)

    def _lookup(self, run: _Run, kind: TargetKind, name: Optional[str]) -> Optional[str]:
        if not name:
            return None
        return run.targets[kind].get(name.lower())

    def _master_fields(self, run: _Run, record_type: RecordType, record: Any) -> dict[str, Any]:
        if record_type == RecordType.CURRENCY:
            return {
                "symbol": record.symbol,
                "formal_name": record.formal_name,
                "decimal_places": record.decimal_places,
                "is_suffix": record.is_suffix,
            }
        if record_type == RecordType.UNIT:
            return {
                "formal_name": record.formal_name,
                "is_simple_unit": record.is_simple_unit,
                "base_unit_id": self._lookup(run, TargetKind.UNIT, record.base_units),
                "additional_unit_id": self._lookup(run, TargetKind.UNIT, record.additional_units),
                "conversion": record.conversion,
                "decimal_places": record.decimal_places,
            }
        if record_type == RecordType.STOCK_GROUP:
            return {"parent_id": self._lookup(run, TargetKind.STOCK_GROUP, record.parent)}
        if record_type == RecordType.STOCK_ITEM:
            return {
                "stock_group_id": self._lookup(run, TargetKind.STOCK_GROUP, record.parent),
                "unit_id": self._lookup(run, TargetKind.UNIT, record.base_units),
                "category": record.category,
                "hsn_code": record.hsn_code,
                "gst_rates": [r.model_dump() for r in record.gst_rates],
                "opening_quantity": record.opening_quantity,
                "opening_rate": record.opening_rate,
                "opening_value": record.opening_value,
                "costing_method": record.costing_method,
            }
        if record_type == RecordType.GODOWN:
            return {"parent_id": self._lookup(run, TargetKind.GODOWN, record.parent), "address": record.address}
        if record_type == RecordType.COST_CATEGORY:
            return {
                "allocate_revenue": record.allocate_revenue,
                "allocate_non_revenue": record.allocate_non_revenue,
                "tag_group": run.mapper.tag_group_for(record.name),
            }
        if record_type == RecordType.COST_CENTRE:
            return {
                "parent_id": self._lookup(run, TargetKind.COST_CENTRE, record.parent),
                "cost_category_id": self._lookup(run, TargetKind.COST_CATEGORY, record.category),
                "tag_group": run.mapper.tag_group_for(record.category),
            }
        raise ValueError(f"Not a simple master type: {record_type}")

    def _import_simple_master(self, run: _Run, record_type: RecordType, record: MasterRecord):
        kind = MASTER_KINDS[record_type]
        key = record.source_key
        existing, outcome = self._existing(run, kind, key)
        if existing:
            target_id = existing
            logger.debug(f"{record_type.value} '{record.name}' already imported as {existing}")
        else:
            fields = {
                "name": record.name,
                "external_ref": key,
                "source_guid": record.guid or None,
                **self._master_fields(run, record_type, record),
            }
            target_id = self._call(
                run, f"create {kind.value} '{record.name}'",
                self.repository.create, kind, fields, run.batch.id,
            )
            outcome = Outcome.IMPORTED
        record.mapping = MappingResult.resolved(kind, target_id)
        with run.lock:
            run.targets[kind][record.name.lower()] = target_id
        self._outcome(run, record_type, PHASE_MASTERS, outcome, record.name)

    # Ledgers

    def _suspense_account(self, run: _Run) -> str:
        # Own lock: other workers keep recording outcomes while this one waits on the target
        with run.suspense_lock:
            if run.suspense_account_id:
                return run.suspense_account_id
            account_id = self.config.suspense_account_id or self._call(
                run, "lookup of suspense account",
                self.repository.find_by_external_ref, TargetKind.ACCOUNT, SUSPENSE_EXTERNAL_REF, None,
            )
            if not account_id:
                account_id = self._call(
                    run, "create suspense account",
                    self.repository.create,
                    TargetKind.ACCOUNT,
                    {
                        "name": self.config.suspense_account_name,
                        "account_type": "suspense",
                        "external_ref": SUSPENSE_EXTERNAL_REF,
                    },
                    run.batch.id,
                )
                logger.info(f"Created suspense account {account_id}")
            run.suspense_account_id = account_id
            return account_id

    def _ledger_fields(self, run: _Run, ledger: Ledger, decision: MappingDecision) -> dict[str, Any]:
        fields: dict[str, Any] = {
            "name": ledger.name,
            "external_ref": ledger.source_key,
            "source_guid": ledger.guid or None,
            "tally_group": ledger.parent,
            "account_type": decision.account_type,
            "currency_id": self._lookup(run, TargetKind.CURRENCY, ledger.currency),
            "gstin": ledger.gstin,
            "gst_registration_type": ledger.gst_registration_type,
            "state": ledger.state,
            "pan": ledger.pan,
            "address": ledger.address,
            "email": ledger.email,
            "phone": ledger.phone,
            "is_bill_wise": ledger.is_bill_wise,
        }
        if ledger.bank:
            fields["bank"] = ledger.bank.model_dump()
        if ledger.opening_bills:
            fields["opening_bills"] = [b.model_dump() for b in ledger.opening_bills]
        return fields

    def _resolve_ledger_target(
        self, run: _Run, name: str, decision: MappingDecision, ledger: Optional[Ledger]
    ) -> tuple[Optional[_LedgerTarget], Outcome]:
        """Find or create the target for one ledger. Returns (target, outcome)."""
        if decision.source == MappingSource.SUSPENSE:
            return _LedgerTarget(TargetKind.SUSPENSE, self._suspense_account(run), decision), Outcome.SUSPENSE
        if decision.target_id:
            return _LedgerTarget(decision.kind, decision.target_id, decision), Outcome.IMPORTED

        ledger = ledger or Ledger(name=name, guid=run.ledger_guids.get(name.lower(), ""))
        existing, outcome = self._existing(run, decision.kind, ledger.source_key)
        if existing:
            return _LedgerTarget(decision.kind, existing, decision), outcome
        target_id = self._call(
            run, f"create {decision.kind.value} '{name}'",
            self.repository.create, decision.kind, self._ledger_fields(run, ledger, decision), run.batch.id,
        )
        return _LedgerTarget(decision.kind, target_id, decision), Outcome.IMPORTED

    def _import_ledger(self, run: _Run, ledger: Ledger):
        decision = run.mapper.resolve_ledger(ledger.name, ledger.parent)
        if decision.source == MappingSource.SKIP:
            with run.lock:
                run.ledger_targets[ledger.name.lower()] = None
            logger.info(f"Ledger '{ledger.name}' skipped: {decision.reason}")
            self._outcome(run, RecordType.LEDGER, PHASE_MASTERS, Outcome.SKIPPED, ledger.name)
            return
        if decision.source == MappingSource.UNMAPPED:
            with run.lock:
                run.ledger_targets[ledger.name.lower()] = None
            self._fail(run, RecordType.LEDGER, PHASE_MASTERS, "NO_MAPPING", decision.reason, ledger.name, ledger.guid)
            return

        target, outcome = self._resolve_ledger_target(run, ledger.name, decision, ledger)
        ledger.mapping = MappingResult.resolved(target.kind, target.target_id)
        with run.lock:
            run.ledger_targets[ledger.name.lower()] = target
        self._outcome(run, RecordType.LEDGER, PHASE_MASTERS, outcome, ledger.name)

    def _ledger_target_for_voucher(self, run: _Run, name: str, decision: MappingDecision) -> _LedgerTarget:
        """Target for a ledger named in a voucher, creating ledgers missing from the masters."""
        with run.lock:
            target = run.ledger_targets.get(name.lower())
        if target is not None:
            return target
        target, outcome = self._resolve_ledger_target(run, name, decision, None)
        with run.lock:
            run.ledger_targets[name.lower()] = target
            if outcome == Outcome.IMPORTED and not decision.target_id:
                # Created on demand: count it with the ledgers
                run.batch.record_outcome(RecordType.LEDGER, Outcome.IMPORTED)
        return target

    # Opening balances

    def _import_opening_balances(self, run: _Run):
        if not run.request.includes(RecordType.OPENING_BALANCE):
            return
        ledgers = [ledger for ledger in run.masters.ledgers if ledger.opening_balance != 0]
        run.tracker.begin_phase(PHASE_OPENING_BALANCES)
        logger.info(f"Importing {len(ledgers)} opening balances")
        for ledger in ledgers:
            self._guarded(
                run, RecordType.OPENING_BALANCE, PHASE_OPENING_BALANCES, ledger.name, ledger.guid,
                lambda l=ledger: self._import_opening_balance(run, l),
            )
        self._publish(run.batch, run.tracker)

    def _import_opening_balance(self, run: _Run, ledger: Ledger):
        decision = run.mapper.resolve_ledger(ledger.name, ledger.parent)
        if decision.source == MappingSource.SKIP:
            self._outcome(run, RecordType.OPENING_BALANCE, PHASE_OPENING_BALANCES, Outcome.SKIPPED, ledger.name)
            return
        if decision.source == MappingSource.UNMAPPED:
            self._fail(
                run, RecordType.OPENING_BALANCE, PHASE_OPENING_BALANCES,
                "NO_MAPPING", decision.reason, ledger.name, ledger.guid,
            )
            return

        key = f"ob:{ledger.source_key}"
        existing, prior = self._existing(run, TargetKind.OPENING_BALANCE, key)
        if existing and prior == Outcome.SKIPPED:
            self._outcome(run, RecordType.OPENING_BALANCE, PHASE_OPENING_BALANCES, Outcome.SKIPPED, ledger.name)
            return

        target = self._ledger_target_for_voucher(run, ledger.name, decision)
        amount = ledger.opening_balance
        if not existing:
            self._call(
                run, f"create opening balance for '{ledger.name}'",
                self.repository.create,
                TargetKind.OPENING_BALANCE,
                {
                    "external_ref": key,
                    "account_id": target.target_id,
                    "account_kind": target.kind.value,
                    "ledger_name": ledger.name,
                    "amount": amount,
                    "debit": -amount if amount < 0 else Decimal("0"),
                    "credit": amount if amount > 0 else Decimal("0"),
                },
                run.batch.id,
            )
        with run.lock:
            if amount < 0:
                run.batch.opening_debit += -amount
            else:
                run.batch.opening_credit += amount
        outcome = Outcome.IMPORTED
        if target.kind == TargetKind.SUSPENSE:
            outcome = Outcome.SUSPENSE
            with run.lock:
                run.batch.add_suspense_item(
                    SuspenseItem(
                        record_type=RecordType.OPENING_BALANCE,
                        source_name=ledger.name,
                        source_group=ledger.parent,
                        source_guid=ledger.guid or None,
                        amount=abs(amount),
                        reason=decision.reason,
                        suspense_account_id=target.target_id,
                    )
                )
        self._outcome(run, RecordType.OPENING_BALANCE, PHASE_OPENING_BALANCES, outcome, ledger.name)

    # Vouchers

    def _import_vouchers(self, run: _Run):
        if not run.request.includes(RecordType.VOUCHER):
            return
        in_scope = [v for v in run.vouchers if run.request.in_window(v.date)]
        excluded = len(run.vouchers) - len(in_scope)
        if excluded:
            logger.info(f"{excluded} vouchers outside the requested date range are not imported")
        run.tracker.begin_phase(PHASE_VOUCHERS)
        logger.info(f"Importing {len(in_scope)} vouchers")

        seen: set[str] = set()
        # Strictly sequential, in source order
        for voucher in in_scope:
            self._guarded(
                run, RecordType.VOUCHER, PHASE_VOUCHERS, voucher.display_name, voucher.guid,
                lambda v=voucher: self._import_voucher(run, v, seen),
            )
        self._publish(run.batch, run.tracker)

    def _skip_voucher(self, run: _Run, voucher: Voucher, reason: str):
        logger.debug(f"{voucher.display_name} skipped: {reason}")
        self._outcome(run, RecordType.VOUCHER, PHASE_VOUCHERS, Outcome.SKIPPED, voucher.display_name)

    def _fail_voucher(self, run: _Run, voucher: Voucher, code: str, message: str):
        self._fail(run, RecordType.VOUCHER, PHASE_VOUCHERS, code, message, voucher.display_name, voucher.guid)

    def _import_voucher(self, run: _Run, voucher: Voucher, seen: set[str]):
        if voucher.is_cancelled:
            return self._skip_voucher(run, voucher, "cancelled in Tally")
        if voucher.is_optional:
            return self._skip_voucher(run, voucher, "optional (memorandum) voucher")

        key = voucher.source_key
        if key in seen:
            return self._skip_voucher(run, voucher, "duplicate of an earlier voucher in this file")
        seen.add(key)

        existing, prior = self._existing(run, TargetKind.JOURNAL_ENTRY, key)
        if existing and prior == Outcome.SKIPPED:
            voucher.journal_entry_id = existing
            return self._skip_voucher(run, voucher, f"already imported as {existing}")

        if not voucher.ledger_entries:
            return self._fail_voucher(run, voucher, "NO_LEDGER_ENTRIES", "voucher has no ledger entries")

        # 1. classify
        if is_ambiguous(voucher, self.config.ambiguous_voucher_types):
            result = classify_payment(voucher, run.groups, self.rules)
            if result.target_ledger_name:
                guid = run.ledger_guids.get(result.target_ledger_name.lower())
                if guid:
                    result = result.model_copy(update={"target_ledger_guid": guid})
            voucher.classification = result
            logger.debug(f"{voucher.display_name} classified as {result.payment_type.value}: {result.reason}")

        # 2. map every line
        decisions = []
        for entry in voucher.ledger_entries:
            decision = run.mapper.resolve_ledger(entry.ledger_name, entry.parent)
            if decision.source == MappingSource.SKIP:
                return self._skip_voucher(run, voucher, decision.reason)
            if decision.source == MappingSource.UNMAPPED:
                return self._fail_voucher(run, voucher, "NO_MAPPING", decision.reason)
            decisions.append(decision)

        # 3. balance
        if not voucher.is_balanced(self.config.balance_tolerance):
            return self._fail_voucher(
                run, voucher, "UNBALANCED_VOUCHER",
                f"debits {voucher.total_debit} and credits {voucher.total_credit} differ by "
                f"{abs(voucher.balance)} (tolerance {self.config.balance_tolerance})",
            )

        lines = []
        suspense_entries = []
        for entry, decision in zip(voucher.ledger_entries, decisions):
            target = self._ledger_target_for_voucher(run, entry.ledger_name, decision)
            entry.mapping = MappingResult.resolved(target.kind, target.target_id)
            if target.kind == TargetKind.SUSPENSE:
                suspense_entries.append((entry, decision))
            lines.append(self._journal_line(run, entry, target))

        # 4. post
        if existing:
            # Posted before this batch was interrupted; only the totals are rebuilt
            voucher.journal_entry_id = existing
        else:
            if run.request.create_journal_entries:
                voucher.journal_entry_id = self._call(
                    run, f"create journal entry for {voucher.display_name}",
                    self.repository.create_journal_entry, lines, self._journal_header(run, voucher, key), run.batch.id,
                )
            if run.request.update_stock_quantities:
                self._apply_stock(run, voucher)

        with run.lock:
            for entry, decision in suspense_entries:
                run.batch.add_suspense_item(
                    SuspenseItem(
                        record_type=RecordType.VOUCHER,
                        source_name=entry.ledger_name,
                        source_group=decision.matched_group,
                        source_guid=voucher.guid or None,
                        amount=abs(entry.amount),
                        reason=f"{decision.reason} in {voucher.display_name}",
                        suspense_account_id=entry.mapping.target_id,
                    )
                )
            run.batch.total_debit += voucher.total_debit
            run.batch.total_credit += voucher.total_credit
            counts = run.batch.voucher_counts_by_type
            counts[voucher.voucher_type] = counts.get(voucher.voucher_type, 0) + 1
            if voucher.classification:
                ptype = voucher.classification.payment_type.value
                run.batch.payment_type_counts[ptype] = run.batch.payment_type_counts.get(ptype, 0) + 1

        outcome = Outcome.SUSPENSE if suspense_entries else Outcome.IMPORTED
        self._outcome(run, RecordType.VOUCHER, PHASE_VOUCHERS, outcome, voucher.display_name)

    def _journal_line(self, run: _Run, entry, target: _LedgerTarget) -> dict[str, Any]:
        return {
            "account_id": target.target_id,
            "account_kind": target.kind.value,
            "ledger_name": entry.ledger_name,
            "amount": entry.amount,
            "debit": entry.debit,
            "credit": entry.credit,
            "is_suspense": target.kind == TargetKind.SUSPENSE,
            "bill_allocations": [
                {"name": b.name, "bill_type": b.bill_type.value, "amount": b.amount, "credit_period": b.credit_period}
                for b in entry.bill_allocations
            ],
            "cost_allocations": [
                {
                    "cost_centre_id": self._lookup(run, TargetKind.COST_CENTRE, c.cost_centre),
                    "cost_centre": c.cost_centre,
                    "tag_group": run.mapper.tag_group_for(c.category),
                    "amount": c.amount,
                }
                for c in entry.cost_allocations
            ],
        }

    def _journal_header(self, run: _Run, voucher: Voucher, key: str) -> dict[str, Any]:
        party = None
        if voucher.party_ledger_name:
            with run.lock:
                party = run.ledger_targets.get(voucher.party_ledger_name.lower())
        classification = voucher.classification
        statutory = classification.statutory if classification else None
        return {
            "external_ref": key,
            "voucher_guid": voucher.guid or None,
            "voucher_number": voucher.number,
            "voucher_type": voucher.voucher_type,
            "base_type": voucher.effective_type,
            "date": voucher.date,
            "reference": voucher.reference,
            "narration": voucher.narration,
            "party_id": party.target_id if party else None,
            "party_kind": party.kind.value if party else None,
            "payment_type": classification.payment_type.value if classification else None,
            "classification_reason": classification.reason if classification else None,
            "statutory": statutory.model_dump(mode="json") if statutory else None,
            "currency": voucher.currency,
            "exchange_rate": voucher.exchange_rate,
            "party_gstin": voucher.party_gstin,
            "place_of_supply": voucher.place_of_supply,
            "irn": voucher.irn,
            "eway_bill_number": voucher.eway_bill_number,
            "source": "tally",
        }

    def _apply_stock(self, run: _Run, voucher: Voucher):
        for inventory in voucher.inventory_entries:
            item_id = self._lookup(run, TargetKind.STOCK_ITEM, inventory.stock_item)
            if item_id is None:
                with run.lock:
                    run.batch.add_error(
                        RecordType.VOUCHER,
                        "STOCK_ITEM_NOT_FOUND",
                        f"stock item '{inventory.stock_item}' was not imported; quantity not updated",
                        source_guid=voucher.guid,
                        source_name=voucher.display_name,
                    )
                continue
            direction = 1 if inventory.is_inward else -1
            for split in inventory.splits():
                movement = {
                    "stock_item_id": item_id,
                    "godown_id": self._lookup(run, TargetKind.GODOWN, split.godown),
                    "quantity": abs(split.quantity) * direction,
                    "rate": inventory.rate,
                    "amount": abs(split.amount),
                    "batch_name": split.batch_name,
                    "date": voucher.date,
                    "voucher_guid": voucher.guid or None,
                    "journal_entry_id": voucher.journal_entry_id,
                }
                try:
                    self._call(
                        run, f"stock movement for '{inventory.stock_item}'",
                        self.repository.apply_stock_movement, movement, run.batch.id,
                    )
                except TargetUnavailableError:
                    raise
                except TargetSystemError as e:
                    # The journal entry is already posted; keep it and report the gap
                    with run.lock:
                        run.batch.add_error(
                            RecordType.VOUCHER,
                            "STOCK_MOVEMENT_FAILED",
                            f"stock movement for '{inventory.stock_item}' failed: {e}",
                            source_guid=voucher.guid,
                            source_name=voucher.display_name,
                        )
