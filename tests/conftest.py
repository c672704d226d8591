"""Pytest configuration and fixtures."""

import json
from unittest.mock import MagicMock

import pytest

from config import load_config


class FakeClock:
    """Monotonic clock the tests move by hand."""

    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def shift_record(number, pay_orders, status="CLOSED", card=0, cash=0):
    """Minimal /v2/cashshifts/list item."""
    return {
        "id": f"shift-{number}",
        "sessionNumber": number,
        "fiscalNumber": number,
        "cashRegNumber": 1,
        "cashRegSerial": "SN-1",
        "openDate": "2024-03-10T09:00:00",
        "closeDate": None if status == "OPEN" else "2024-03-10T23:00:00",
        "acceptDate": None,
        "managerId": "manager",
        "sessionStartCash": 0,
        "payOrders": pay_orders,
        "sumWriteoffOrders": 0,
        "salesCash": cash,
        "salesCredit": 0,
        "salesCard": card,
        "payIn": 0,
        "payOut": 0,
        "payIncome": 0,
        "cashRemain": None,
        "cashDiff": 0,
        "sessionStatus": status,
        "conceptionId": None,
    }


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config_file(tmp_path):
    """Config file with two servers, one user and one admin."""
    path = tmp_path / "bot_config.json"
    path.write_text(json.dumps({
        "login": "reporter",
        "pass": "secret",
        "servers": {
            "main": "main.example.com:443",
            "backup": "http://localhost:8080/resto/api",
        },
        "accounts": ["bob"],
        "admins": ["admin"],
        "TELEGRAM_BOT_TOKEN": "123:abc",
    }), encoding="utf-8")
    return path


@pytest.fixture
def settings(config_file):
    return load_config(str(config_file))


@pytest.fixture
def resto_client():
    """Stand-in for RestoClient: auth/logout via get, shifts via get_json, OLAP via post_json."""
    client = MagicMock()
    client.get.return_value = MagicMock(text="session-key")
    client.get_json.return_value = []
    client.post_json.return_value = {"data": []}
    return client


@pytest.fixture
def engine(settings, resto_client):
    from app import build_engine
    return build_engine(settings, client=resto_client)
