"""Tests for OLAP grouping and table rendering."""

from datetime import datetime
from unittest.mock import MagicMock

import pytest
import pytz

from errors import NotFoundError, RemoteAPIError
from olap import (
    MAX_ROWS, OTHER_CATEGORY, OlapRow, OlapService,
    build_report_request, format_number, group_rows, render_category, wrap_text,
)

SERVER = "https://cafe.example.com/resto/api"


def row(name, guests, amount=100.0, category="Soups"):
    return OlapRow(category, name, amount, guests)


def test_report_request_filters_current_month_and_deleted():
    now = pytz.utc.localize(datetime(2024, 3, 15, 22, 30))
    request = build_report_request(now)

    assert request["reportType"] == "SALES"
    assert request["groupByRowFields"] == ["DishCategory"]
    assert request["groupByColFields"] == ["DishName"]
    assert request["aggregateFields"] == ["GuestNum", "DishDiscountSumInt"]
    assert request["filters"]["OpenDate.Typed"] == {
        "filterType": "DateRange", "periodType": "CURRENT_MONTH", "to": "2024-03-16",
    }
    for key in ("DeletedWithWriteoff", "OrderDeleted"):
        assert request["filters"][key] == {"filterType": "IncludeValues", "values": ["NOT_DELETED"]}


def test_fetch_report_posts_request_and_groups_rows():
    client = MagicMock()
    client.post_json.return_value = {"data": [
        {"DishCategory": "Soups", "DishName": "Borscht", "DishDiscountSumInt": 1200.0, "GuestNum": 4},
        {"DishName": "Bread", "DishDiscountSumInt": 50, "GuestNum": 9},
        {"DishCategory": "Soups", "DishName": "Solyanka", "DishDiscountSumInt": 900.5, "GuestNum": 2},
    ]}
    service = OlapService(client)

    groups = service.fetch_report(SERVER, "key-1", {"reportType": "SALES"})

    args, kwargs = client.post_json.call_args
    assert args[0] == f"{SERVER}/v2/reports/olap"
    assert kwargs["params"] == {"key": "key-1"}
    assert kwargs["json"] == {"reportType": "SALES"}
    assert list(groups) == ["Soups", OTHER_CATEGORY]
    assert [r.dish_name for r in groups["Soups"]] == ["Borscht", "Solyanka"]
    assert groups[OTHER_CATEGORY][0].guest_num == 9


def test_fetch_report_without_data_list_is_an_error():
    client = MagicMock()
    client.post_json.return_value = {"rows": []}
    with pytest.raises(RemoteAPIError):
        OlapService(client).fetch_report(SERVER, "key-1")


def test_empty_category_name_goes_to_other():
    groups = group_rows([OlapRow("", "Tea", 10.0, 1), OlapRow(None, "Coffee", 20.0, 2)])
    assert list(groups) == [OTHER_CATEGORY]
    assert len(groups[OTHER_CATEGORY]) == 2


def test_wrap_text_is_greedy_and_keeps_words():
    assert wrap_text("Chicken noodle soup with herbs", 15) == ["Chicken noodle", "soup with herbs"]
    assert wrap_text("Supercalifragilistic soup", 15) == ["Supercalifragilistic", "soup"]
    assert wrap_text("", 15) == [""]


def test_format_number():
    assert format_number(100.0) == "100"
    assert format_number(99.5) == "99.5"
    assert format_number(7) == "7"


def test_render_single_row_layout():
    table = render_category([row("Borscht", 4, 1200.0)])
    assert table.splitlines() == [
        "┌─────────┬──────┬────────┐",
        "│  Dish   │ Sum  │ Guests │",
        "├─────────┼──────┼────────┤",
        "│ Borscht │ 1200 │ 4      │",
        "└─────────┴──────┴────────┘",
    ]


def test_render_wraps_long_names_and_separates_rows():
    table = render_category([
        row("Chicken noodle soup with herbs", 3),
        row("Tea", 10),
    ])
    lines = table.splitlines()
    widths = {len(line) for line in lines}

    assert len(widths) == 1
    # Tea sorts first, then the wrapped row; no separator between wrapped lines
    assert lines[3].startswith("│ Tea ")
    assert lines[4].startswith("├")
    assert lines[5].startswith("│ Chicken noodle ")
    assert lines[6].startswith("│ soup with herbs")
    assert lines[6].rstrip("│").split("│")[2].strip() == ""
    assert lines[7].startswith("└")


def test_render_counts_characters_not_bytes():
    table = render_category([row("Борщ украинский", 5), row("Чай", 1)])
    assert len({len(line) for line in table.splitlines()}) == 1


def test_render_caps_rows_and_sorts_by_guests():
    rows = [row(f"Dish {n}", n) for n in range(30)]
    table = render_category(rows)
    lines = table.splitlines()

    data = [line for line in lines[3:] if line.startswith("│")]
    guests = [int(line.split("│")[3]) for line in data]
    assert len(data) == MAX_ROWS
    assert guests == sorted(guests, reverse=True)
    assert guests[0] == 29


def test_render_sort_is_stable_for_ties():
    table = render_category([row("First", 2), row("Second", 2), row("Third", 2)])
    names = [line.split("│")[1].strip() for line in table.splitlines()[3:] if line.startswith("│")]
    assert names == ["First", "Second", "Third"]


def test_render_empty_is_not_found():
    with pytest.raises(NotFoundError):
        render_category([])
