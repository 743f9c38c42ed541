"""
Normalizer: Tally records to the intermediate model.

One builder per record tag. A builder that hits a malformed record
records a ValidationIssue and drops only that record (or that line);
it never raises.
"""
from __future__ import annotations
from decimal import Decimal
from typing import Callable, Optional
from loguru import logger
from pydantic import ValidationError

from ..models import (
    BankDetails,
    BillAllocation,
    BillType,
    CostAllocation,
    CostCategory,
    CostCentre,
    Currency,
    GodownAllocation,
    Godown,
    Group,
    GstRate,
    InventoryEntry,
    Ledger,
    LedgerEntry,
    MastersCollection,
    OpeningBill,
    Severity,
    StockGroup,
    StockItem,
    Unit,
    ValidationIssue,
    Voucher,
    VoucherTypeMaster,
)
from .base import (
    parse_amount,
    parse_bool,
    parse_int,
    parse_optional_bool,
    parse_quantity,
    parse_rate,
    parse_tally_date,
)
from .sources import ExportDocument, RecordView


LEDGER_ENTRY_TAGS = ("ALLLEDGERENTRIES.LIST", "LEDGERENTRIES.LIST")
INVENTORY_ENTRY_TAGS = ("ALLINVENTORYENTRIES.LIST", "INVENTORYENTRIES.LIST", "INVENTORYENTRIESIN.LIST", "INVENTORYENTRIESOUT.LIST")


def _validation_message(error: ValidationError) -> str:
    return "; ".join(e["msg"] for e in error.errors())


class Normalizer:
    """
    Builds the intermediate model from an ExportDocument.

    Usage:
        normalizer = Normalizer()
        masters, vouchers = normalizer.normalize(document)
        issues = normalizer.issues
    """

    def __init__(self):
        self.issues: list[ValidationIssue] = []
        self._unsupported: set[str] = set()
        self._builders: dict[str, Callable[[RecordView, MastersCollection], None]] = {
            "COMPANY": self._company,
            "CURRENCY": self._currency,
            "UNIT": self._unit,
            "STOCKGROUP": self._stock_group,
            "STOCKITEM": self._stock_item,
            "GODOWN": self._godown,
            "COSTCATEGORY": self._cost_category,
            "COSTCENTRE": self._cost_centre,
            "GROUP": self._group,
            "LEDGER": self._ledger,
            "VOUCHERTYPE": self._voucher_type,
        }
        self._vouchers: list[Voucher] = []

    def issue(
        self,
        severity: Severity,
        code: str,
        message: str,
        record_type: str,
        record_name: Optional[str] = None,
        record_guid: Optional[str] = None,
        field: Optional[str] = None,
    ):
        self.issues.append(
            ValidationIssue(
                severity=severity,
                code=code,
                message=message,
                record_type=record_type,
                record_name=record_name,
                record_guid=record_guid or None,
                field=field,
            )
        )

    def normalize(self, document: ExportDocument) -> tuple[MastersCollection, list[Voucher]]:
        masters = MastersCollection(company_name=document.company_name)
        voucher_records: list[RecordView] = []

        for record in document.records:
            if record.tag == "VOUCHER":
                # Vouchers need voucher type masters, which may come later in the file
                voucher_records.append(record)
                continue
            builder = self._builders.get(record.tag)
            if builder is None:
                if record.tag not in self._unsupported:
                    self._unsupported.add(record.tag)
                    self.issue(Severity.INFO, "UNSUPPORTED_RECORD", f"Record type {record.tag} is not imported", record.tag.lower())
                continue
            builder(record, masters)

        for record in voucher_records:
            voucher = self._voucher(record, masters)
            if voucher is not None:
                self._vouchers.append(voucher)

        logger.info(
            f"Normalized {len(masters.ledgers)} ledgers, {len(masters.stock_items)} stock items, "
            f"{len(self._vouchers)} vouchers ({len(self.issues)} issues)"
        )
        return masters, self._vouchers

    def _build(self, model, record_type: str, record: RecordView, **fields):
        """Construct a model, turning a validation failure into an issue."""
        try:
            return model(**fields)
        except ValidationError as e:
            self.issue(
                Severity.ERROR,
                "INVALID_RECORD",
                f"{record_type} dropped: {_validation_message(e)}",
                record_type,
                record_name=fields.get("name") or record.name(),
                record_guid=record.guid(),
            )
            return None

    def _part(self, model, record_type: str, label: Optional[str], guid: Optional[str], field: str, **fields):
        """Construct an allocation or line; a bad one is dropped, its record is kept."""
        try:
            return model(**fields)
        except ValidationError as e:
            self.issue(
                Severity.WARNING, "INVALID_ALLOCATION",
                f"{label}: {field} dropped: {_validation_message(e)}",
                record_type, label, guid, field,
            )
            return None

    # Masters

    def _company(self, record: RecordView, masters: MastersCollection):
        masters.company_name = masters.company_name or record.name()
        masters.company_guid = masters.company_guid or record.guid() or None

    def _currency(self, record: RecordView, masters: MastersCollection):
        currency = self._build(
            Currency, "currency", record,
            guid=record.guid(),
            name=record.name() or record.text("ORIGINALSYMBOL") or "",
            symbol=record.text("ORIGINALSYMBOL", "EXPANDEDSYMBOL"),
            formal_name=record.text("MAILINGNAME", "EXPANDEDSYMBOL"),
            decimal_places=parse_int(record.text("DECIMALPLACES"), 2),
            is_suffix=parse_bool(record.text("ISSUFFIX")),
            alter_id=parse_int(record.text("ALTERID"), 0) or None,
        )
        if currency:
            masters.currencies.append(currency)

    def _unit(self, record: RecordView, masters: MastersCollection):
        unit = self._build(
            Unit, "unit", record,
            guid=record.guid(),
            name=record.name() or "",
            formal_name=record.text("ORIGINALNAME"),
            is_simple_unit=parse_bool(record.text("ISSIMPLEUNIT"), True),
            base_units=record.text("BASEUNITS"),
            additional_units=record.text("ADDITIONALUNITS"),
            conversion=parse_amount(record.text("CONVERSION"), Decimal("1")) or Decimal("1"),
            decimal_places=parse_int(record.text("DECIMALPLACES"), 0),
            alter_id=parse_int(record.text("ALTERID"), 0) or None,
        )
        if unit:
            masters.units.append(unit)

    def _stock_group(self, record: RecordView, masters: MastersCollection):
        group = self._build(
            StockGroup, "stock_group", record,
            guid=record.guid(),
            name=record.name() or "",
            parent=record.text("PARENT"),
            base_units=record.text("BASEUNITS"),
        )
        if group:
            masters.stock_groups.append(group)

    def _stock_item(self, record: RecordView, masters: MastersCollection):
        opening_qty, unit = parse_quantity(record.text("OPENINGBALANCE"))
        closing_qty, _ = parse_quantity(record.text("CLOSINGBALANCE"))
        rates = []
        for rate_detail in record.iter_descendants("RATEDETAILS.LIST"):
            head = rate_detail.text("GSTRATEDUTYHEAD")
            rate = parse_amount(rate_detail.text("GSTRATE"), None)
            if head and rate is not None:
                gst_rate = self._part(
                    GstRate, "stock_item", record.name(), record.guid(), "RATEDETAILS",
                    duty_head=head, rate=abs(rate),
                )
                if gst_rate:
                    rates.append(gst_rate)

        item = self._build(
            StockItem, "stock_item", record,
            guid=record.guid(),
            name=record.name() or "",
            parent=record.text("PARENT"),
            category=record.text("CATEGORY"),
            base_units=record.text("BASEUNITS") or unit,
            hsn_code=record.deep_text("HSNCODE") or record.text("GSTCLASSIFICATIONCODE"),
            gst_rates=rates,
            opening_quantity=opening_qty,
            opening_rate=parse_rate(record.text("OPENINGRATE")),
            opening_value=abs(parse_amount(record.text("OPENINGVALUE"))),
            closing_quantity=closing_qty,
            closing_value=abs(parse_amount(record.text("CLOSINGVALUE"))),
            costing_method=record.text("COSTINGMETHOD"),
            alter_id=parse_int(record.text("ALTERID"), 0) or None,
        )
        if item:
            masters.stock_items.append(item)

    def _godown(self, record: RecordView, masters: MastersCollection):
        address_lines = [a.value() for a in record.iter_descendants("ADDRESS")]
        godown = self._build(
            Godown, "godown", record,
            guid=record.guid(),
            name=record.name() or "",
            parent=record.text("PARENT"),
            address=", ".join(a for a in address_lines if a) or None,
        )
        if godown:
            masters.godowns.append(godown)

    def _cost_category(self, record: RecordView, masters: MastersCollection):
        category = self._build(
            CostCategory, "cost_category", record,
            guid=record.guid(),
            name=record.name() or "",
            allocate_revenue=parse_bool(record.text("ALLOCATEREVENUE"), True),
            allocate_non_revenue=parse_bool(record.text("ALLOCATENONREVENUE")),
        )
        if category:
            masters.cost_categories.append(category)

    def _cost_centre(self, record: RecordView, masters: MastersCollection):
        centre = self._build(
            CostCentre, "cost_centre", record,
            guid=record.guid(),
            name=record.name() or "",
            parent=record.text("PARENT"),
            category=record.text("CATEGORY"),
        )
        if centre:
            masters.cost_centres.append(centre)

    def _group(self, record: RecordView, masters: MastersCollection):
        group = self._build(
            Group, "group", record,
            guid=record.guid(),
            name=record.name() or "",
            parent=record.text("PARENT"),
            is_revenue=parse_bool(record.text("ISREVENUE")),
            nature=record.text("NATUREOFGROUP", "PRIMARYGROUP"),
        )
        if group:
            masters.groups.append(group)

    def _ledger(self, record: RecordView, masters: MastersCollection):
        name = record.name() or ""
        bank = None
        account_number = record.text("BANKACCOUNTNUMBER", "BANKDETAILS")
        if account_number or record.text("IFSCODE"):
            bank = BankDetails(
                account_number=account_number,
                ifsc=record.text("IFSCODE"),
                bank_name=record.text("BANKINGCONFIGBANK", "BANKNAME"),
                branch=record.text("BRANCHNAME"),
            )

        opening_bills = []
        for bill in record.children("BILLALLOCATIONS.LIST", "LEDGERBILLALLOCATIONS.LIST"):
            bill_name = bill.text("NAME")
            amount = parse_amount(bill.text("OPENINGBALANCE", "AMOUNT"), None)
            if not bill_name or amount is None:
                continue
            opening_bill = self._part(
                OpeningBill, "ledger", name, record.guid(), "BILLALLOCATIONS",
                name=bill_name,
                bill_date=parse_tally_date(bill.text("BILLDATE")),
                amount=amount,
                credit_period=bill.text("BILLCREDITPERIOD"),
            )
            if opening_bill:
                opening_bills.append(opening_bill)

        address_lines = [a.value() for a in record.iter_descendants("ADDRESS")]
        ledger = self._build(
            Ledger, "ledger", record,
            guid=record.guid(),
            name=name,
            parent=record.text("PARENT"),
            opening_balance=parse_amount(record.text("OPENINGBALANCE")),
            closing_balance=parse_amount(record.text("CLOSINGBALANCE")),
            currency=record.text("CURRENCYNAME"),
            gstin=record.text("PARTYGSTIN", "GSTIN") or record.deep_text("GSTIN"),
            gst_registration_type=record.text("GSTREGISTRATIONTYPE") or record.deep_text("GSTREGISTRATIONTYPE"),
            state=record.text("LEDSTATENAME", "STATENAME", "PRIORSTATENAME"),
            pan=record.text("INCOMETAXNUMBER", "PAN"),
            bank=bank,
            is_bill_wise=parse_bool(record.text("ISBILLWISEON")),
            address=", ".join(a for a in address_lines if a) or None,
            email=record.text("EMAIL"),
            phone=record.text("LEDGERMOBILE", "LEDGERPHONE"),
            opening_bills=opening_bills,
            alter_id=parse_int(record.text("ALTERID"), 0) or None,
        )
        if ledger:
            masters.ledgers.append(ledger)

    def _voucher_type(self, record: RecordView, masters: MastersCollection):
        voucher_type = self._build(
            VoucherTypeMaster, "voucher_type", record,
            guid=record.guid(),
            name=record.name() or "",
            parent=record.text("PARENT"),
            numbering_method=record.text("NUMBERINGMETHOD"),
            is_active=parse_bool(record.text("ISACTIVE"), True),
        )
        if voucher_type:
            masters.voucher_types.append(voucher_type)

    # Vouchers

    def _ledger_entry(self, line: RecordView, voucher_label: str, guid: str) -> Optional[LedgerEntry]:
        ledger_name = line.text("LEDGERNAME")
        amount = parse_amount(line.text("AMOUNT"), None)
        if not ledger_name or amount is None:
            self.issue(
                Severity.ERROR, "INVALID_LEDGER_ENTRY",
                f"{voucher_label}: ledger entry without ledger name or amount dropped",
                "voucher", voucher_label, guid, "LEDGERENTRIES",
            )
            return None
        if amount == 0:
            # Zero lines (round-off placeholders) have no side and no effect on balance
            self.issue(
                Severity.INFO, "ZERO_AMOUNT_ENTRY",
                f"{voucher_label}: zero amount line for '{ledger_name}' ignored",
                "voucher", voucher_label, guid, "AMOUNT",
            )
            return None

        bills = []
        for bill in line.children("BILLALLOCATIONS.LIST"):
            bill_name = bill.text("NAME")
            bill_amount = parse_amount(bill.text("AMOUNT"), None)
            if not bill_name or bill_amount is None:
                continue
            allocation = self._part(
                BillAllocation, "voucher", voucher_label, guid, "BILLALLOCATIONS",
                name=bill_name,
                bill_type=BillType.from_tally(bill.text("BILLTYPE")),
                amount=bill_amount,
                credit_period=bill.text("BILLCREDITPERIOD"),
                ledger_name=ledger_name,
            )
            if allocation:
                bills.append(allocation)

        costs = []
        for category in line.children("CATEGORYALLOCATIONS.LIST"):
            category_name = category.text("CATEGORY")
            for centre in category.children("COSTCENTREALLOCATIONS.LIST"):
                centre_name = centre.text("NAME")
                centre_amount = parse_amount(centre.text("AMOUNT"), None)
                if not centre_name or centre_amount is None:
                    continue
                allocation = self._part(
                    CostAllocation, "voucher", voucher_label, guid, "COSTCENTREALLOCATIONS",
                    category=category_name,
                    cost_centre=centre_name,
                    amount=centre_amount,
                    ledger_name=ledger_name,
                )
                if allocation:
                    costs.append(allocation)

        try:
            return LedgerEntry(
                ledger_name=ledger_name,
                amount=amount,
                is_deemed_positive=parse_optional_bool(line.text("ISDEEMEDPOSITIVE")),
                is_party_ledger=parse_bool(line.text("ISPARTYLEDGER")),
                bill_allocations=bills,
                cost_allocations=costs,
            )
        except ValidationError as e:
            self.issue(
                Severity.ERROR, "UNDEFINED_SIGN",
                f"{voucher_label}: {_validation_message(e)}",
                "voucher", voucher_label, guid, "ISDEEMEDPOSITIVE",
            )
            return None

    def _inventory_entry(self, line: RecordView, voucher_label: str, guid: str) -> Optional[InventoryEntry]:
        item_name = line.text("STOCKITEMNAME")
        if not item_name:
            return None
        billed_qty, unit = parse_quantity(line.text("BILLEDQTY"))
        actual_qty, actual_unit = parse_quantity(line.text("ACTUALQTY"))
        godowns = []
        for alloc in line.children("BATCHALLOCATIONS.LIST"):
            qty, _ = parse_quantity(alloc.text("ACTUALQTY", "BILLEDQTY"))
            godown = self._part(
                GodownAllocation, "voucher", voucher_label, guid, "BATCHALLOCATIONS",
                godown=alloc.text("GODOWNNAME"),
                batch_name=alloc.text("BATCHNAME"),
                quantity=qty,
                amount=parse_amount(alloc.text("AMOUNT")),
            )
            if godown:
                godowns.append(godown)
        return self._part(
            InventoryEntry, "voucher", voucher_label, guid, "INVENTORYENTRIES",
            stock_item=item_name,
            amount=parse_amount(line.text("AMOUNT")),
            rate=parse_rate(line.text("RATE")),
            unit=unit or actual_unit,
            billed_quantity=billed_qty,
            actual_quantity=actual_qty,
            is_deemed_positive=parse_optional_bool(line.text("ISDEEMEDPOSITIVE")),
            godowns=godowns,
        )

    def _voucher(self, record: RecordView, masters: MastersCollection) -> Optional[Voucher]:
        guid = record.guid()
        voucher_type = record.text("VOUCHERTYPENAME") or record.attr("VCHTYPE")
        number = record.text("VOUCHERNUMBER") or record.attr("VCHNUMBER")
        voucher_date = parse_tally_date(record.text("DATE", "EFFECTIVEDATE"))
        label = f"{voucher_type or 'Voucher'} {number or guid or '?'}"

        if not voucher_type or voucher_date is None:
            missing = "voucher type" if not voucher_type else "date"
            self.issue(
                Severity.ERROR, "INVALID_RECORD",
                f"{label}: missing {missing}, voucher dropped",
                "voucher", label, guid, "VOUCHERTYPENAME" if not voucher_type else "DATE",
            )
            return None

        entries = []
        for line in record.children(*LEDGER_ENTRY_TAGS):
            entry = self._ledger_entry(line, label, guid)
            if entry:
                entries.append(entry)

        inventory = []
        for line in record.children(*INVENTORY_ENTRY_TAGS):
            entry = self._inventory_entry(line, label, guid)
            if entry is None:
                continue
            inventory.append(entry)
            # Invoice-mode vouchers carry the sales/purchase ledger inside the item line
            for alloc in line.children("ACCOUNTINGALLOCATIONS.LIST"):
                lifted = self._ledger_entry(alloc, label, guid)
                if lifted:
                    entries.append(lifted.model_copy(update={"from_inventory": True}))

        voucher = self._build(
            Voucher, "voucher", record,
            guid=guid,
            number=number,
            voucher_type=voucher_type,
            base_type=masters.base_voucher_type(voucher_type),
            date=voucher_date,
            reference=record.text("REFERENCE"),
            narration=record.text("NARRATION"),
            party_ledger_name=record.text("PARTYLEDGERNAME", "PARTYNAME"),
            currency=record.text("CURRENCYNAME"),
            exchange_rate=parse_amount(record.text("EXCHANGERATE"), None),
            party_gstin=record.text("PARTYGSTIN"),
            place_of_supply=record.text("PLACEOFSUPPLY"),
            gst_registration_type=record.text("GSTREGISTRATIONTYPE"),
            irn=record.text("IRN", "IRNACKNO"),
            eway_bill_number=record.deep_text("EWAYBILLNO") or record.text("EWAYBILLNUMBER"),
            is_cancelled=parse_bool(record.text("ISCANCELLED")),
            is_optional=parse_bool(record.text("ISOPTIONAL")),
            is_invoice=parse_bool(record.text("ISINVOICE")),
            ledger_entries=entries,
            inventory_entries=inventory,
        )
        return voucher
