"""
Cash shift listing and aggregation.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from errors import NotFoundError, RemoteAPIError
from resto_api import make_url

logger = logging.getLogger(__name__)


class ShiftStatus(Enum):
    OPEN = 'OPEN'
    CLOSED = 'CLOSED'
    ACCEPTED = 'ACCEPTED'
    UNACCEPTED = 'UNACCEPTED'
    HASWARNINGS = 'HASWARNINGS'

    @property
    def label(self) -> str:
        return "Open" if self is ShiftStatus.OPEN else "Closed"


def _number(value, default=0):
    if value is None:
        return default
    return float(value)


@dataclass(frozen=True)
class Shift:
    """One cash register session as returned by /v2/cashshifts/list."""
    id: str
    session_number: int
    open_date: str
    session_status: ShiftStatus
    pay_orders: float = 0.0
    sales_cash: float = 0.0
    sales_card: float = 0.0
    sales_credit: float = 0.0
    pay_in: float = 0.0
    pay_out: float = 0.0
    cash_diff: float = 0.0
    close_date: Optional[str] = None
    accept_date: Optional[str] = None
    fiscal_number: Optional[int] = None
    cash_reg_number: Optional[int] = None
    manager_id: Optional[str] = None
    conception_id: Optional[str] = None

    @classmethod
    def from_api(cls, data: dict) -> 'Shift':
        """Build a Shift from the API's camelCase JSON object."""
        try:
            return cls(
                id=str(data['id']),
                session_number=int(data.get('sessionNumber') or 0),
                open_date=data.get('openDate', ''),
                session_status=ShiftStatus(data.get('sessionStatus', 'CLOSED')),
                pay_orders=_number(data.get('payOrders')),
                sales_cash=_number(data.get('salesCash')),
                sales_card=_number(data.get('salesCard')),
                sales_credit=_number(data.get('salesCredit')),
                pay_in=_number(data.get('payIn')),
                pay_out=_number(data.get('payOut')),
                cash_diff=_number(data.get('cashDiff')),
                close_date=data.get('closeDate'),
                accept_date=data.get('acceptDate'),
                fiscal_number=data.get('fiscalNumber'),
                cash_reg_number=data.get('cashRegNumber'),
                manager_id=data.get('managerId'),
                conception_id=data.get('conceptionId'),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise RemoteAPIError(f"Unexpected shift record: {e}") from e


class ShiftService:
    """Fetches shifts for a date range and reduces them to report values."""

    def __init__(self, client):
        self.client = client

    def list_shifts(self, token: str, server_url: str, date_range, now=None) -> list:
        """List shifts opened within `date_range`, oldest first.

        Args:
            token: Valid session key
            server_url: API base URL
            date_range: dates.DateRange to list
            now: Optional moment to compute the range from (tests)

        Returns:
            List of Shift in the order the server returned them
        """
        date_from, date_to = date_range.bounds(now)
        params = {
            'openDateFrom': date_from,
            'openDateTo': date_to,
            'status': 'ANY',
            'key': token,
        }
        data = self.client.get_json(make_url(server_url, 'v2', 'cashshifts', 'list'), params=params)
        if not isinstance(data, list):
            raise RemoteAPIError("Shift listing is not a JSON array")

        shifts = [Shift.from_api(item) for item in data]
        logger.debug(f"Fetched {len(shifts)} shifts for {date_from}..{date_to}")
        return shifts

    @staticmethod
    def latest_shift(shifts, offset: int = 0) -> Shift:
        """Shift `offset` positions back from the newest one.

        Offset 0 is the latest shift, 1 the one before it.

        Raises:
            NotFoundError: if there are not enough shifts
        """
        if offset < 0 or offset >= len(shifts):
            raise NotFoundError(f"No shift at offset {offset}")
        return shifts[len(shifts) - 1 - offset]

    @staticmethod
    def sum_shifts(shifts) -> float:
        """Total of payOrders over the shifts."""
        return sum(shift.pay_orders for shift in shifts)
