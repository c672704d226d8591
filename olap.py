"""
OLAP sales breakdown: fetching, grouping by dish category and rendering a
category as a box-drawn text table.
"""
import logging
from collections import namedtuple

from dates import reporting_today, DATE_FORMAT
from errors import NotFoundError, RemoteAPIError
from resto_api import make_url

logger = logging.getLogger(__name__)

OTHER_CATEGORY = "Other"

# Table limits
MAX_ROWS = 20
NAME_WIDTH = 15
HEADERS = ("Dish", "Sum", "Guests")

OlapRow = namedtuple('OlapRow', ['category', 'dish_name', 'discount_sum', 'guest_num'])


def build_report_request(now=None) -> dict:
    """Sales by dish category and dish for the current month.

    Deleted orders and dishes written off on deletion are excluded.
    """
    return {
        'reportType': 'SALES',
        'groupByRowFields': ['DishCategory'],
        'groupByColFields': ['DishName'],
        'aggregateFields': ['GuestNum', 'DishDiscountSumInt'],
        'filters': {
            'OpenDate.Typed': {
                'filterType': 'DateRange',
                'periodType': 'CURRENT_MONTH',
                'to': reporting_today(now).strftime(DATE_FORMAT),
            },
            'DeletedWithWriteoff': {
                'filterType': 'IncludeValues',
                'values': ['NOT_DELETED'],
            },
            'OrderDeleted': {
                'filterType': 'IncludeValues',
                'values': ['NOT_DELETED'],
            },
        },
    }


def parse_row(item: dict) -> OlapRow:
    try:
        return OlapRow(
            category=item.get('DishCategory'),
            dish_name=str(item.get('DishName') or ''),
            discount_sum=float(item.get('DishDiscountSumInt') or 0),
            guest_num=int(item.get('GuestNum') or 0),
        )
    except (TypeError, ValueError) as e:
        raise RemoteAPIError(f"Unexpected OLAP row: {e}") from e


def group_rows(rows) -> dict:
    """Group rows by category in first-seen order.

    Rows without a category go under OTHER_CATEGORY.
    """
    groups = {}
    for row in rows:
        key = row.category or OTHER_CATEGORY
        groups.setdefault(key, []).append(row)
    return groups


def wrap_text(text: str, width: int) -> list:
    """Greedy word wrap that never splits a word.

    A single word longer than `width` stays on its own line.
    """
    lines = []
    current = ""
    for word in text.split():
        if current and len(current) + 1 + len(word) > width:
            lines.append(current)
            current = ""
        current = f"{current} {word}" if current else word
    if current:
        lines.append(current)
    return lines or [""]


def format_number(value) -> str:
    """Render a float without a trailing '.0' for whole numbers."""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def render_category(rows) -> str:
    """Render rows as a Unicode box table.

    Rows are sorted by guest count (descending, stable) and capped at
    MAX_ROWS. Dish names wrap at NAME_WIDTH characters; continuation lines
    leave the other cells blank.

    Raises:
        NotFoundError: if there are no rows
    """
    if not rows:
        raise NotFoundError("Nothing found for this category")

    displayed = sorted(rows, key=lambda row: row.guest_num, reverse=True)[:MAX_ROWS]

    table_rows = []
    for row in displayed:
        name_lines = wrap_text(row.dish_name, NAME_WIDTH)
        table_rows.append((name_lines, format_number(row.discount_sum), str(row.guest_num)))

    widths = [len(h) for h in HEADERS]
    for name_lines, amount, guests in table_rows:
        widths[0] = max(widths[0], max(len(line) for line in name_lines))
        widths[1] = max(widths[1], len(amount))
        widths[2] = max(widths[2], len(guests))

    def border(left, separator, right):
        return left + separator.join('─' * (w + 2) for w in widths) + right

    def line(cells):
        return '│' + '│'.join(f" {cell}".ljust(w + 2) for cell, w in zip(cells, widths)) + '│'

    def centered(text, w):
        # Extra padding goes to the right
        return (' ' * ((w + 2 - len(text)) // 2) + text).ljust(w + 2)

    header = '│' + '│'.join(centered(h, w) for h, w in zip(HEADERS, widths)) + '│'

    out = [border('┌', '┬', '┐'), header, border('├', '┼', '┤')]
    for idx, (name_lines, amount, guests) in enumerate(table_rows):
        for line_idx, name in enumerate(name_lines):
            if line_idx == 0:
                out.append(line((name, amount, guests)))
            else:
                out.append(line((name, "", "")))
        if idx + 1 != len(table_rows):
            out.append(border('├', '┼', '┤'))
    out.append(border('└', '┴', '┘'))

    return '\n'.join(out)


class OlapService:
    """Fetches the OLAP report and groups it for per-category display."""

    def __init__(self, client):
        self.client = client

    def fetch_report(self, server_url: str, token: str, report_request=None) -> dict:
        """POST the report request and group the returned rows.

        Returns:
            Dict of category name -> list of OlapRow, in first-seen order
        """
        if report_request is None:
            report_request = build_report_request()

        data = self.client.post_json(
            make_url(server_url, 'v2', 'reports', 'olap'),
            params={'key': token},
            json=report_request,
        )
        if not isinstance(data, dict) or not isinstance(data.get('data'), list):
            raise RemoteAPIError("OLAP response has no 'data' list")

        rows = [parse_row(item) for item in data['data']]
        groups = group_rows(rows)
        logger.debug(f"OLAP report: {len(rows)} rows in {len(groups)} categories")
        return groups

    render_category = staticmethod(render_category)
