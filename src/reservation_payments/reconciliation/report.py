"""Report generation for reconciliation results."""

import json
import csv
import io
from datetime import datetime
from typing import List

from ..money import format_minor
from .models import ReconciliationResult, ReconciliationItem, ReconciliationStatus, SelectionStrategy


class ReportGenerator:
    """Generator for reconciliation reports in various formats."""

    def __init__(self, result: ReconciliationResult, currency: str = "USD"):
        """Initialize the report generator.

        Args:
            result: The reconciliation result to generate output from.
            currency: Currency used to format amounts in text reports.
        """
        self.result = result
        self.currency = currency

    def to_json(self, include_details: bool = True, indent: int = 2) -> str:
        """Generate JSON representation of the result.

        Args:
            include_details: If True, include chosen items. If False, only summary.
            indent: JSON indentation level.

        Returns:
            JSON string representation of the result.
        """
        if include_details:
            data = self.result.to_full_dict()
        else:
            data = self.result.to_summary_dict()

        def json_serializer(obj):
            if isinstance(obj, datetime):
                return obj.isoformat()
            if isinstance(obj, (ReconciliationStatus, SelectionStrategy)):
                return obj.value
            raise TypeError(f"Object of type {type(obj)} is not JSON serializable")

        return json.dumps(data, indent=indent, default=json_serializer)

    def to_csv(self) -> str:
        """Generate CSV with one row per settled reservation."""
        output = io.StringIO()
        writer = csv.writer(output)
        writer.writerow([
            "batch_key", "hotel_id", "side", "reservation_id",
            "confirmation_number", "amount", "skipped",
        ])
        skipped = set(self.result.skipped)
        for side, items in (
            ("offline", self.result.offline_items),
            ("online", self.result.online_items),
        ):
            for item in items:
                writer.writerow([
                    self.result.batch_key or "",
                    self.result.hotel_id,
                    side,
                    item.reservation_id,
                    item.confirmation_number or "",
                    item.amount,
                    "yes" if item.reservation_id in skipped else "no",
                ])
        return output.getvalue()

    def _money(self, amount: int) -> str:
        return format_minor(amount, self.currency)

    def to_summary_text(self) -> str:
        """Generate a human-readable text summary of the result.

        Returns:
            Formatted text summary of the reconciliation run.
        """
        summary = self.result.to_summary_dict()
        stats = summary["statistics"]
        remainder = summary["remainder"]

        lines = [
            "=" * 60,
            "HOTEL RECONCILIATION SUMMARY",
            "=" * 60,
            f"Batch Key: {summary['batch_key'] or 'N/A (dry run)'}",
            f"Hotel: {summary['hotel_id']}",
            f"Status: {summary['status']}",
            f"Strategy: {summary['strategy']}",
            f"Tolerance: {self._money(summary['tolerance'])}",
            "",
            "Settlement:",
            f"  Settled Amount: {self._money(summary['settled_amount'])}",
            f"  Offline Commission Items: {stats['offline_count']} "
            f"({self._money(stats['offline_total'])})",
            f"  Online Transfer Items: {stats['online_count']} "
            f"({self._money(stats['online_total'])})",
            f"  Skipped: {stats['skipped']}",
            "",
            "Remainder:",
            f"  Offline Unsettled: {self._money(remainder.get('offline', 0))}",
            f"  Online Unsettled: {self._money(remainder.get('online', 0))}",
            f"  Difference: {self._money(remainder.get('difference', 0))}",
            "",
            f"Created At: {summary['created_at']}",
            f"Completed At: {summary['completed_at'] or 'N/A'}",
        ]

        if summary.get("error_message"):
            lines.extend([
                "",
                "Error:",
                f"  {summary['error_message']}",
            ])

        lines.append("=" * 60)

        return "\n".join(lines)

    def _item_lines(self, title: str, items: List[ReconciliationItem]) -> List[str]:
        lines = [title, "-" * 40]
        for item in items:
            mark = " (skipped)" if item.reservation_id in self.result.skipped else ""
            lines.append(
                f"  {item.confirmation_number or item.reservation_id}: "
                f"{self._money(item.amount)}{mark}"
            )
        lines.append("")
        return lines

    def to_detailed_text(self) -> str:
        """Generate a detailed human-readable text report.

        Returns:
            Formatted text with summary and all chosen items.
        """
        lines = [self.to_summary_text(), ""]
        if self.result.offline_items:
            lines.extend(self._item_lines("COMMISSION MARKED PAID", self.result.offline_items))
        if self.result.online_items:
            lines.extend(self._item_lines("TRANSFERS MARKED DONE", self.result.online_items))
        return "\n".join(lines)
