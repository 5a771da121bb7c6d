import csv
import re
from datetime import datetime
from io import StringIO
from typing import Sequence

from models import Expense

REPORT_COLUMNS = ["category", "amount", "budget", "date"]


def sanitize_csv_value(value: str) -> str:
    """
    Sanitize CSV values to prevent formula injection by prefixing dangerous patterns with tab.
    """
    if not value or value.strip() == "":
        return ""

    value = value.strip()

    formula_triggers = ("=", "+", "-", "@", "\t", "\r")

    if value.startswith(formula_triggers):
        return "\t" + value

    dangerous_patterns = [
        r"^cmd\s*",
        r"^powershell\s*",
        r"^bash\s*",
        r"^sh\s*",
        r"^\.",
        r"^http[s]?://",
    ]

    for pattern in dangerous_patterns:
        if re.match(pattern, value, re.IGNORECASE):
            return "\t" + value

    return value


def format_amount(cents: int) -> str:
    return f"{cents / 100:.2f}"


def format_timestamp(value: datetime) -> str:
    # stored timestamps are naive UTC
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def export_expenses(expenses: Sequence[Expense]) -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(REPORT_COLUMNS)
    for expense in expenses:
        category = expense.category
        writer.writerow(
            [
                sanitize_csv_value(category.name if category else "Unknown"),
                format_amount(expense.amount_cents),
                format_amount(category.budget_cents) if category else "N/A",
                format_timestamp(expense.occurred_at),
            ]
        )
    return output.getvalue()
