"""Tariff catalog and expiry arithmetic."""

import enum
from datetime import datetime, timedelta
from typing import Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict

from .exceptions import NotFoundError


class TariffId(str, enum.Enum):
    """Known tariff identifiers."""
    TRIAL = "trial"
    WEEK = "week"
    MONTH = "month"
    QUARTER = "quarter"
    YEAR = "year"


class Tariff(BaseModel):
    """A purchasable duration with a device limit.

    ``minutes`` takes precedence over ``days`` when set; it is used for
    short trial units.
    """

    model_config = ConfigDict(frozen=True)

    id: TariffId
    label: str
    price: int
    days: int
    minutes: Optional[int] = None
    max_devices: int

    @property
    def is_trial(self) -> bool:
        return self.id == TariffId.TRIAL

    def duration(self) -> timedelta:
        if self.minutes:
            return timedelta(minutes=self.minutes)
        return timedelta(days=self.days)

    def expires_at(self, now: Optional[datetime] = None) -> datetime:
        return (now or datetime.utcnow()) + self.duration()


def _table(prices: Mapping[TariffId, int]) -> List[Tariff]:
    return [
        Tariff(id=TariffId.TRIAL, label="Trial (1 day)", price=prices[TariffId.TRIAL], days=1, max_devices=1),
        Tariff(id=TariffId.WEEK, label="7 days", price=prices[TariffId.WEEK], days=7, max_devices=2),
        Tariff(id=TariffId.MONTH, label="30 days", price=prices[TariffId.MONTH], days=30, max_devices=3),
        Tariff(id=TariffId.QUARTER, label="90 days", price=prices[TariffId.QUARTER], days=90, max_devices=3),
        Tariff(id=TariffId.YEAR, label="1 year", price=prices[TariffId.YEAR], days=365, max_devices=3),
    ]


DEFAULT_TARIFFS: Dict[str, List[Tariff]] = {
    "ru": _table({
        TariffId.TRIAL: 0,
        TariffId.WEEK: 50,
        TariffId.MONTH: 150,
        TariffId.QUARTER: 400,
        TariffId.YEAR: 1200,
    }),
    "nl": _table({
        TariffId.TRIAL: 0,
        TariffId.WEEK: 80,
        TariffId.MONTH: 250,
        TariffId.QUARTER: 650,
        TariffId.YEAR: 2000,
    }),
}


class TariffCatalog:
    """Per-endpoint tariff tables."""

    def __init__(self, tables: Optional[Mapping[str, List[Tariff]]] = None):
        self._tables: Dict[str, List[Tariff]] = dict(tables if tables is not None else DEFAULT_TARIFFS)

    def for_endpoint(self, endpoint_code: str) -> List[Tariff]:
        return list(self._tables.get(endpoint_code, []))

    def get(self, endpoint_code: str, tariff_id: str) -> Tariff:
        """Look up a tariff.

        Raises:
            NotFoundError: If the endpoint has no table or the tariff is unknown.
        """
        for tariff in self._tables.get(endpoint_code, []):
            if tariff.id.value == str(getattr(tariff_id, "value", tariff_id)):
                return tariff
        raise NotFoundError(f"Tariff {tariff_id} not found for endpoint {endpoint_code}")

    def endpoint_codes(self) -> List[str]:
        return list(self._tables)
