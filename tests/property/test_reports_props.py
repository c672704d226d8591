"""
Property-based tests for shift selection, totals and the OLAP table.
"""

import random

import pytest
from hypothesis import given, strategies as st, settings

from conftest import shift_record
from errors import NotFoundError
from olap import MAX_ROWS, NAME_WIDTH, OTHER_CATEGORY, OlapRow, group_rows, render_category, wrap_text
from shifts import Shift, ShiftService


# Strategies for generating test data
amount_strategy = st.integers(min_value=0, max_value=10**7).map(float)
word_strategy = st.text(alphabet="abcdefghijklmnopqrstuvwxyz", min_size=1, max_size=20)
name_strategy = st.lists(word_strategy, min_size=1, max_size=6).map(" ".join)
category_strategy = st.one_of(st.none(), st.just(""), st.sampled_from(["Soups", "Drinks", "Salads"]))
row_strategy = st.builds(
    OlapRow,
    category=category_strategy,
    dish_name=name_strategy,
    discount_sum=amount_strategy,
    guest_num=st.integers(min_value=0, max_value=500),
)


def make_shifts(amounts):
    return [Shift.from_api(shift_record(number, amount)) for number, amount in enumerate(amounts, 1)]


class TestLatestShift:
    """
    The shift at offset k is the (k+1)-th from the end; anything past the
    start of the list is not found.
    """

    @settings(max_examples=100)
    @given(amounts=st.lists(amount_strategy, min_size=1, max_size=30), data=st.data())
    def test_offset_counts_from_the_end(self, amounts, data):
        shifts = make_shifts(amounts)
        offset = data.draw(st.integers(min_value=0, max_value=len(shifts) - 1))
        assert ShiftService.latest_shift(shifts, offset) is shifts[len(shifts) - 1 - offset]

    @settings(max_examples=50)
    @given(amounts=st.lists(amount_strategy, max_size=10), extra=st.integers(min_value=0, max_value=5))
    def test_offset_past_start_is_not_found(self, amounts, extra):
        shifts = make_shifts(amounts)
        with pytest.raises(NotFoundError):
            ShiftService.latest_shift(shifts, len(shifts) + extra)


class TestSumShifts:

    @settings(max_examples=100)
    @given(amounts=st.lists(amount_strategy, max_size=30), seed=st.integers())
    def test_sum_is_order_independent(self, amounts, seed):
        shifts = make_shifts(amounts)
        shuffled = list(shifts)
        random.Random(seed).shuffle(shuffled)

        assert ShiftService.sum_shifts(shifts) == ShiftService.sum_shifts(shuffled)
        assert ShiftService.sum_shifts(shifts) == sum(amounts)


class TestGroupRows:

    @settings(max_examples=100)
    @given(rows=st.lists(row_strategy, max_size=40))
    def test_every_row_lands_in_exactly_one_group(self, rows):
        groups = group_rows(rows)

        assert sum(len(group) for group in groups.values()) == len(rows)
        for row in rows:
            key = row.category or OTHER_CATEGORY
            assert row in groups[key]
        assert all(group for group in groups.values())


class TestRenderCategory:
    """
    The rendered table is a rectangle with at most MAX_ROWS entries, ordered
    by guest count, and never splits a word across lines.
    """

    @settings(max_examples=100)
    @given(rows=st.lists(row_strategy, min_size=1, max_size=40))
    def test_table_shape(self, rows):
        table = render_category(rows)
        lines = table.split("\n")

        assert len({len(line) for line in lines}) == 1
        assert lines[0].startswith("┌") and lines[-1].startswith("└")

        # One data line per row starts with a guest count in the last cell
        first_lines = [line for line in lines[3:-1]
                       if line.startswith("│") and line.rstrip("│").split("│")[-1].strip()]
        assert len(first_lines) == min(len(rows), MAX_ROWS)

        guests = [int(line.split("│")[-2]) for line in first_lines]
        assert guests == sorted(guests, reverse=True)
        assert guests == sorted((row.guest_num for row in rows), reverse=True)[:MAX_ROWS]

    @settings(max_examples=100)
    @given(text=name_strategy)
    def test_wrap_keeps_words_whole(self, text):
        lines = wrap_text(text, NAME_WIDTH)

        assert " ".join(lines).split() == text.split()
        for line in lines:
            assert len(line) <= NAME_WIDTH or " " not in line
