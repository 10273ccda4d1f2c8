# pyright: reportUnknownMemberType=false, reportUnknownArgumentType=false

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from types import MappingProxyType
from typing import Any, Iterable, Mapping
from zoneinfo import ZoneInfo
import json
import os
import uuid
import warnings

import pandas as pd
from openpyxl import Workbook

from .currency import Currency

# Default timezone for activities without timezone info
NYC_TIMEZONE = ZoneInfo("America/New_York")

# Bucket name for activities recorded without an account
UNASSIGNED = "Unassigned"

ACTIVITY_COLUMNS = ["ID", "SYMBOL", "DATE AND TIME", "ACTIVITY TYPE", "QUANTITY", "PRICE", "FEE", "CURRENCY", "ACCOUNT"]
ACTIVITY_TYPE_COLUMNS = ["NAME", "BEHAVIOR"]
ACTIVITIES_SHEET = "Activities"
ACTIVITY_TYPES_SHEET = "Activity Types"


def _normalize_activity_datetime(dt: datetime) -> tuple[datetime, bool, bool]:
    """
    Normalize an activity datetime to ensure it has timezone information.

    A naive datetime is assumed to be NYC time. A naive midnight
    (00:00:00) is taken to be a date without a time and becomes 12:00 PM.
    Timezone-aware values are kept as they are, midnight included, so
    timestamps written by ``save_activities`` load back unchanged.

    Args:
        dt: The datetime to normalize.

    Returns:
        A tuple of (normalized_datetime, time_was_missing, timezone_was_missing).
    """
    time_was_missing = False
    timezone_was_missing = False

    if dt.tzinfo is not None:
        return dt, time_was_missing, timezone_was_missing

    if dt.hour == 0 and dt.minute == 0 and dt.second == 0 and dt.microsecond == 0:
        dt = dt.replace(hour=12, minute=0, second=0, microsecond=0)
        time_was_missing = True

    dt = dt.replace(tzinfo=NYC_TIMEZONE)
    timezone_was_missing = True

    return dt, time_was_missing, timezone_was_missing


def to_aware(dt: datetime) -> datetime:
    """Return ``dt`` with NYC attached when it is naive, unchanged otherwise."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=NYC_TIMEZONE)
    return dt


def local_day(dt: datetime) -> date:
    """Return the New York calendar day an activity or price belongs to."""
    if dt.tzinfo is None:
        return dt.date()
    return dt.astimezone(NYC_TIMEZONE).date()


class ActivityBehavior(Enum):
    """How an activity type moves a holding."""

    ADD = "ADD"
    REMOVE = "REMOVE"
    SPLIT = "SPLIT"
    NEUTRAL = "NEUTRAL"


DEFAULT_ACTIVITY_BEHAVIORS: Mapping[str, ActivityBehavior] = MappingProxyType({
    "BUY": ActivityBehavior.ADD,
    "SELL": ActivityBehavior.REMOVE,
    "DIVIDEND": ActivityBehavior.NEUTRAL,
    "STOCK_SPLIT": ActivityBehavior.SPLIT,
})

STOCK_SPLIT = "STOCK_SPLIT"
DIVIDEND = "DIVIDEND"


@dataclass(frozen=True)
class ActivityTypeDefinition:
    """A user-configurable activity type and the behavior it maps to."""
    name: str
    behavior: ActivityBehavior


class BehaviorMap:
    """Read-only lookup from activity type name to behavior.

    The built-in defaults sit underneath the user's definitions, so BUY,
    SELL, DIVIDEND and STOCK_SPLIT always resolve even when the store has
    no type definitions. Unknown types resolve to NEUTRAL with a warning
    emitted once per type.
    """

    def __init__(self, definitions: Iterable[ActivityTypeDefinition] | None = None):
        table = dict(DEFAULT_ACTIVITY_BEHAVIORS)
        for definition in definitions or []:
            table[definition.name.upper()] = definition.behavior
        self._table: Mapping[str, ActivityBehavior] = MappingProxyType(table)
        self._warned: set[str] = set()

    @property
    def table(self) -> Mapping[str, ActivityBehavior]:
        return self._table

    def behavior_for(self, activity_type: str) -> ActivityBehavior:
        """Resolve the behavior of an activity type.

        Args:
            activity_type: Activity type name, case-insensitive.

        Returns:
            The mapped behavior, or NEUTRAL for unmapped types.
        """
        key = activity_type.upper()
        behavior = self._table.get(key)
        if behavior is not None:
            return behavior
        if key not in self._warned:
            self._warned.add(key)
            warnings.warn(
                f"Activity type '{activity_type}' has no behavior mapping. Treating it as NEUTRAL.",
                UserWarning
            )
        return ActivityBehavior.NEUTRAL

    def __contains__(self, activity_type: object) -> bool:
        return isinstance(activity_type, str) and activity_type.upper() in self._table

    def __repr__(self):
        return f"BehaviorMap({ {k: v.value for k, v in self._table.items()} })"


def new_activity_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class Activity:
    """A single recorded event against an investment.

    For STOCK_SPLIT activities ``quantity`` holds the split ratio (2 for a
    2-for-1 split) and ``price`` is zero. ``account_id`` of None puts the
    activity in the Unassigned bucket. An account literally named
    "Unassigned" shares that bucket; the file loaders store it as None.
    """
    symbol: str
    activity_datetime: datetime
    activity_type: str
    quantity: Decimal
    price: Decimal
    fee: Decimal = Decimal("0")
    currency: Currency = Currency.USD
    account_id: str | None = None
    activity_id: str = field(default_factory=new_activity_id)

    @property
    def bucket(self) -> str:
        """Account bucket this activity belongs to."""
        return self.account_id if self.account_id is not None else UNASSIGNED

    @property
    def amount(self) -> Decimal:
        """Gross amount, ``|quantity| * price``."""
        return abs(self.quantity) * self.price


class ActivityStore(ABC):
    """Source of activity records and activity type definitions."""

    @abstractmethod
    def get_activities(
        self,
        symbol: str | None = None,
        account_ids: Iterable[str] | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[Activity]:
        """Return matching activities in ascending date order.

        Args:
            symbol: Restrict to one investment.
            account_ids: Restrict to these account buckets. ``UNASSIGNED``
                selects activities without an account.
            start: Earliest activity datetime (inclusive).
            end: Latest activity datetime (inclusive).
        """
        raise NotImplementedError("This method should be overridden by subclasses.")

    @abstractmethod
    def get_activity_types(self) -> list[ActivityTypeDefinition]:
        raise NotImplementedError("This method should be overridden by subclasses.")

    @abstractmethod
    def add_activity(self, activity: Activity) -> Activity:
        raise NotImplementedError("This method should be overridden by subclasses.")

    @abstractmethod
    def list_symbols(self) -> list[str]:
        raise NotImplementedError("This method should be overridden by subclasses.")

    def get_behavior_map(self) -> BehaviorMap:
        """Build the behavior map from this store's type definitions."""
        return BehaviorMap(self.get_activity_types())


class InMemoryActivityStore(ActivityStore):
    """Activity store held in a Python list, optionally backed by a file."""

    def __init__(
        self,
        activities: Iterable[Activity] | None = None,
        activity_types: Iterable[ActivityTypeDefinition] | None = None,
    ):
        self.activities: list[Activity] = list(activities or [])
        self.activity_types: list[ActivityTypeDefinition] = list(activity_types or [])

    def get_activities(
        self,
        symbol: str | None = None,
        account_ids: Iterable[str] | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[Activity]:
        buckets = set(account_ids) if account_ids is not None else None
        start_key = to_aware(start) if start is not None else None
        end_key = to_aware(end) if end is not None else None

        selected: list[Activity] = []
        for activity in self.activities:
            if symbol is not None and activity.symbol != symbol:
                continue
            if buckets is not None and activity.bucket not in buckets:
                continue
            if isinstance(activity.activity_datetime, datetime):
                key = to_aware(activity.activity_datetime)
                if start_key is not None and key < start_key:
                    continue
                if end_key is not None and key > end_key:
                    continue
            selected.append(activity)

        return sort_activities(selected)

    def get_activity_types(self) -> list[ActivityTypeDefinition]:
        return list(self.activity_types)

    def add_activity(self, activity: Activity) -> Activity:
        self.activities.append(activity)
        return activity

    def list_symbols(self) -> list[str]:
        return sorted({a.symbol for a in self.activities})

    def __repr__(self):
        return f"InMemoryActivityStore(activities={len(self.activities)}, activity_types={len(self.activity_types)})"


def sort_activities(activities: Iterable[Activity]) -> list[Activity]:
    """Sort activities by datetime, keeping insertion order for ties.

    Activities whose datetime is not a datetime are kept at the end so the
    replay can report and skip them.
    """
    placeholder = datetime(1970, 1, 1, tzinfo=NYC_TIMEZONE)

    def key(activity: Activity) -> tuple[bool, datetime]:
        if isinstance(activity.activity_datetime, datetime):
            return (False, to_aware(activity.activity_datetime))
        return (True, placeholder)

    return sorted(activities, key=key)


def _warn_normalized(file_path: str, any_missing_time: bool, any_missing_timezone: bool) -> None:
    # A missing time is only detected on naive values, so it implies a missing timezone
    if any_missing_time:
        warnings.warn(
            f"Some activities in '{file_path}' were missing time and timezone information. "
            f"Assuming 12:00 PM NYC time (America/New_York) for these activities.",
            UserWarning
        )
    elif any_missing_timezone:
        warnings.warn(
            f"Some activities in '{file_path}' were missing timezone information. "
            f"Assuming NYC timezone (America/New_York) for these activities.",
            UserWarning
        )


def _to_decimal(value: Any, default: Decimal | None = None) -> Decimal:
    if value is None or (isinstance(value, float) and pd.isna(value)) or value == "":
        if default is None:
            raise ValueError("Missing numeric value")
        return default
    try:
        return Decimal(str(value))
    except InvalidOperation as e:
        raise ValueError(f"Invalid numeric value: {value!r}") from e


def _optional_text(value: Any) -> str | None:
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return None
    text = str(value).strip()
    return text or None


def _parse_account(value: Any) -> str | None:
    account = _optional_text(value)
    # An account named like the bucket for activities without one is that bucket
    if account == UNASSIGNED:
        return None
    return account


def _parse_currency(record: dict[str, Any], default_currency: Currency) -> Currency:
    currency_value = _optional_text(record.get("currency"))
    if not currency_value:
        return default_currency
    return Currency(currency_value.upper())


def _parse_activity_record(record: dict[str, Any], currency: Currency) -> tuple[Activity, bool, bool]:
    raw = record["datetime"]
    if raw is None or (not isinstance(raw, str) and pd.isna(raw)):
        raise ValueError("Missing date")
    if isinstance(raw, datetime):
        raw_datetime = raw
    else:
        raw_datetime = pd.to_datetime(raw).to_pydatetime()  # type: ignore[assignment]
    activity_datetime, time_missing, tz_missing = _normalize_activity_datetime(raw_datetime)

    activity = Activity(
        symbol=str(record["symbol"]).strip(),
        activity_datetime=activity_datetime,
        activity_type=str(record["activity_type"]).strip().upper(),
        quantity=_to_decimal(record["quantity"]),
        price=_to_decimal(record.get("price"), Decimal("0")),
        fee=_to_decimal(record.get("fee"), Decimal("0")),
        currency=currency,
        account_id=_parse_account(record.get("account")),
        activity_id=_optional_text(record.get("id")) or new_activity_id(),
    )
    return activity, time_missing, tz_missing


def _parse_activity_records(
    records: Iterable[dict[str, Any]],
    file_path: str,
    default_currency: Currency,
) -> list[Activity]:
    activities: list[Activity] = []
    any_missing_time = False
    any_missing_timezone = False

    for index, record in enumerate(records):
        # Unknown currencies are configuration errors and propagate
        currency = _parse_currency(record, default_currency)
        try:
            activity, time_missing, tz_missing = _parse_activity_record(record, currency)
        except (ValueError, TypeError, KeyError) as e:
            warnings.warn(f"Skipping malformed activity #{index + 1} in '{file_path}': {e}", UserWarning)
            continue
        any_missing_time = any_missing_time or time_missing
        any_missing_timezone = any_missing_timezone or tz_missing
        activities.append(activity)

    _warn_normalized(file_path, any_missing_time, any_missing_timezone)
    return activities


def _create_empty_activities_excel(file_path: str) -> None:
    """Create an empty Excel file with just the required headers."""
    wb = Workbook()
    ws = wb.active
    assert ws is not None
    ws.title = ACTIVITIES_SHEET
    for col, header in enumerate(ACTIVITY_COLUMNS, start=1):
        ws.cell(row=1, column=col, value=header)
    wb.save(file_path)


def load_activities_from_excel(
    file_path: str,
    default_currency: Currency = Currency.USD,
    create_if_missing: bool = False,
) -> InMemoryActivityStore:
    """
    Load activities from an Excel workbook.

    The first sheet holds activities. An optional "Activity Types" sheet
    holds custom type definitions with NAME and BEHAVIOR columns.

    Args:
        file_path: Path to the Excel file.
        default_currency: Currency for rows whose CURRENCY cell is empty.
        create_if_missing: If True and the file doesn't exist, create an
            empty workbook with headers and return an empty store.

    Returns:
        InMemoryActivityStore populated from the workbook.

    Raises:
        FileNotFoundError: If the file is missing and create_if_missing is False.
        ValueError: If required columns are missing or a currency is unknown.

    Expected columns (order independent):
        - SYMBOL, DATE AND TIME, ACTIVITY TYPE, QUANTITY: required
        - PRICE, FEE, CURRENCY, ACCOUNT, ID: optional
    """
    if not os.path.exists(file_path):
        if create_if_missing:
            _create_empty_activities_excel(file_path)
            return InMemoryActivityStore()
        raise FileNotFoundError(f"Activity file not found: {file_path}")

    sheets: dict[str, pd.DataFrame] = pd.read_excel(file_path, sheet_name=None)
    sheet_names = list(sheets.keys())
    df = sheets[ACTIVITIES_SHEET] if ACTIVITIES_SHEET in sheets else sheets[sheet_names[0]]

    activity_types: list[ActivityTypeDefinition] = []
    if ACTIVITY_TYPES_SHEET in sheets:
        for _, row in sheets[ACTIVITY_TYPES_SHEET].iterrows():
            activity_types.append(ActivityTypeDefinition(
                name=str(row["NAME"]).strip().upper(),
                behavior=ActivityBehavior(str(row["BEHAVIOR"]).strip().upper()),
            ))

    if df.empty:
        return InMemoryActivityStore(activity_types=activity_types)

    required_columns = {"SYMBOL", "DATE AND TIME", "ACTIVITY TYPE", "QUANTITY"}
    missing_columns = required_columns - set(df.columns)
    if missing_columns:
        raise ValueError(f"Missing required columns: {missing_columns}")

    records = []
    for _, row in df.iterrows():
        records.append({
            "id": row.get("ID"),
            "symbol": row["SYMBOL"],
            "datetime": row["DATE AND TIME"],
            "activity_type": row["ACTIVITY TYPE"],
            "quantity": row["QUANTITY"],
            "price": row.get("PRICE"),
            "fee": row.get("FEE"),
            "currency": row.get("CURRENCY"),
            "account": row.get("ACCOUNT"),
        })

    activities = _parse_activity_records(records, file_path, default_currency)
    return InMemoryActivityStore(activities, activity_types)


def save_activities_to_excel(store: InMemoryActivityStore, file_path: str) -> None:
    """
    Save a store's activities and custom activity types to an Excel file.

    Args:
        store: Store whose activities are written.
        file_path: Path to the Excel file to write.
    """
    wb = Workbook()
    ws = wb.active
    assert ws is not None
    ws.title = ACTIVITIES_SHEET

    for col, header in enumerate(ACTIVITY_COLUMNS, start=1):
        ws.cell(row=1, column=col, value=header)

    for row, activity in enumerate(store.activities, start=2):
        ws.cell(row=row, column=1, value=activity.activity_id)
        ws.cell(row=row, column=2, value=activity.symbol)
        ws.cell(row=row, column=3, value=activity.activity_datetime.isoformat())
        ws.cell(row=row, column=4, value=activity.activity_type)
        ws.cell(row=row, column=5, value=str(activity.quantity))
        ws.cell(row=row, column=6, value=str(activity.price))
        ws.cell(row=row, column=7, value=str(activity.fee))
        ws.cell(row=row, column=8, value=activity.currency.value)
        ws.cell(row=row, column=9, value=activity.account_id)

    if store.activity_types:
        types_ws = wb.create_sheet(ACTIVITY_TYPES_SHEET)
        for col, header in enumerate(ACTIVITY_TYPE_COLUMNS, start=1):
            types_ws.cell(row=1, column=col, value=header)
        for row, definition in enumerate(store.activity_types, start=2):
            types_ws.cell(row=row, column=1, value=definition.name)
            types_ws.cell(row=row, column=2, value=definition.behavior.value)

    wb.save(file_path)


def load_activities_from_json(
    file_path: str,
    default_currency: Currency = Currency.USD,
) -> InMemoryActivityStore:
    """
    Load activities from a JSON file.

    Args:
        file_path: Path to the JSON file.
        default_currency: Currency for records without a currency.

    Returns:
        InMemoryActivityStore populated from the file.

    Raises:
        ValueError: If the file has neither a list nor an object with an
            "activities" list.

    Expected JSON structure, either a bare list of activities or:
        {
            "activity_types": [{"name": "DRIP", "behavior": "ADD"}],
            "activities": [
                {
                    "id": "a1",
                    "symbol": "AAPL",
                    "datetime": "2024-01-15T10:30:00",
                    "activity_type": "BUY",
                    "quantity": 10,
                    "price": 150.50,
                    "fee": 1.0,
                    "currency": "USD",
                    "account": "brokerage"
                }
            ]
        }
    """
    with open(file_path, "r") as f:
        data = json.load(f)

    type_data: list[Any] = []
    if isinstance(data, dict):
        type_data = data.get("activity_types", [])  # type: ignore[assignment]
        data = data.get("activities")  # type: ignore[union-attr]

    if not isinstance(data, list):
        raise ValueError("JSON file must contain a list of activities")

    activity_types = [
        ActivityTypeDefinition(name=str(item["name"]).upper(), behavior=ActivityBehavior(str(item["behavior"]).upper()))
        for item in type_data
    ]
    activities = _parse_activity_records(data, file_path, default_currency)  # type: ignore[arg-type]
    return InMemoryActivityStore(activities, activity_types)


def save_activities_to_json(store: InMemoryActivityStore, file_path: str) -> None:
    """Save a store's activities and custom activity types to a JSON file."""
    data = {
        "activity_types": [
            {"name": definition.name, "behavior": definition.behavior.value}
            for definition in store.activity_types
        ],
        "activities": [
            {
                "id": activity.activity_id,
                "symbol": activity.symbol,
                "datetime": activity.activity_datetime.isoformat(),
                "activity_type": activity.activity_type,
                "quantity": str(activity.quantity),
                "price": str(activity.price),
                "fee": str(activity.fee),
                "currency": activity.currency.value,
                "account": activity.account_id,
            }
            for activity in store.activities
        ],
    }

    with open(file_path, "w") as f:
        json.dump(data, f, indent=2)


def load_activities(file_path: str, default_currency: Currency = Currency.USD) -> InMemoryActivityStore:
    """Load an activity file, picking the format from its extension."""
    if file_path.lower().endswith(".json"):
        return load_activities_from_json(file_path, default_currency)
    return load_activities_from_excel(file_path, default_currency)


def save_activities(store: InMemoryActivityStore, file_path: str) -> None:
    """Save an activity file, picking the format from its extension."""
    if file_path.lower().endswith(".json"):
        save_activities_to_json(store, file_path)
    else:
        save_activities_to_excel(store, file_path)
