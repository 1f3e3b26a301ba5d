"""Tabular export rows.

Flattens reports and ledger data into ``TabularExport`` (title, columns,
rows) for a separate renderer to turn into CSV or spreadsheets.  Amounts are
major-unit ``Decimal`` values; no file formatting happens here.
"""

from dataclasses import dataclass, field
from datetime import date
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from bodaledger.models.settlement import PartnerType, SettlementStatus
from bodaledger.money import to_major
from bodaledger.services.gl import (
    coa_service,
    journal_engine,
    reports_service,
    settlement_service,
)


@dataclass
class TabularExport:
    title: str
    columns: list[str]
    rows: list[list[Any]] = field(default_factory=list)

    def as_dicts(self) -> list[dict]:
        return [dict(zip(self.columns, row)) for row in self.rows]


async def chart_of_accounts_rows(db: AsyncSession) -> TabularExport:
    export = TabularExport(
        title="Chart of Accounts",
        columns=["Code", "Name", "Type", "Normal Balance", "Status", "Balance"],
    )
    for a in await coa_service.get_chart_of_accounts(db):
        export.rows.append([
            a["account_code"], a["name"], a["account_type"],
            a["normal_balance"], a["status"], a["balance"],
        ])
    return export


async def trial_balance_rows(db: AsyncSession, as_of: date | None = None) -> TabularExport:
    report = await reports_service.generate_trial_balance(db, as_of)
    export = TabularExport(
        title=f"Trial Balance{f' as of {as_of}' if as_of else ''}",
        columns=["Code", "Account", "Type", "Debit", "Credit"],
    )
    for a in report["accounts"]:
        export.rows.append([
            a["account_code"], a["account_name"], a["account_type"], a["debit"], a["credit"],
        ])
    export.rows.append(["", "TOTAL", "", report["total_debits"], report["total_credits"]])
    return export


async def journal_entry_rows(db: AsyncSession, start: date, end: date) -> TabularExport:
    export = TabularExport(
        title=f"Journal Entries {start} to {end}",
        columns=[
            "Entry Number", "Date", "Type", "Status", "Description",
            "Amount", "Rider", "Source Transaction",
        ],
    )
    for e in await journal_engine.get_by_date_range(db, start, end):
        export.rows.append([
            e.entry_number,
            e.entry_date.isoformat(),
            e.entry_type.value,
            e.status.value,
            e.description,
            to_major(e.total_debits),
            e.rider_id or "",
            e.source_transaction_id or "",
        ])
    return export


async def settlement_rows(
    db: AsyncSession,
    *,
    partner_type: PartnerType | None = None,
    status: SettlementStatus | None = None,
) -> TabularExport:
    export = TabularExport(
        title="Partner Settlements",
        columns=[
            "Settlement Number", "Partner", "Type", "Status", "Period Start",
            "Period End", "Amount", "Bank Reference", "Settled At",
        ],
    )
    for s in await settlement_service.get_settlements(
        db, partner_type=partner_type, status=status
    ):
        export.rows.append([
            s.settlement_number,
            s.partner_type.value,
            s.settlement_type.value,
            s.status.value,
            s.period_start.isoformat(),
            s.period_end.isoformat(),
            to_major(s.total_amount),
            s.bank_reference or "",
            s.settled_at.isoformat() if s.settled_at else "",
        ])
    return export


async def balance_sheet_rows(db: AsyncSession, as_of: date) -> TabularExport:
    report = await reports_service.generate_balance_sheet(db, as_of)
    export = TabularExport(
        title=f"Balance Sheet as of {as_of}",
        columns=["Category", "Code", "Account", "Amount"],
    )
    for category in ("assets", "liabilities", "equity"):
        for item in report[category]:
            export.rows.append([
                category.title(), item["account_code"] or "", item["account_name"], item["amount"],
            ])
    export.rows.append(["Total", "", "Total Assets", report["total_assets"]])
    export.rows.append([
        "Total", "", "Total Liabilities and Equity", report["total_liabilities_and_equity"],
    ])
    return export


async def income_statement_rows(db: AsyncSession, start: date, end: date) -> TabularExport:
    report = await reports_service.generate_income_statement(db, start, end)
    export = TabularExport(
        title=f"Income Statement {start} to {end}",
        columns=["Category", "Code", "Account", "Amount"],
    )
    for category in ("income", "expenses"):
        for item in report[category]:
            export.rows.append([
                category.title(), item["account_code"], item["account_name"], item["amount"],
            ])
    export.rows.append(["Total", "", "Net Income", report["net_income"]])
    return export
