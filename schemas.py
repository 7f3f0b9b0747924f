import datetime as dt
import re
from decimal import Decimal, DecimalException, InvalidOperation
from typing import Annotated, Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

HEX_COLOR = re.compile(r"^#[0-9a-fA-F]{6}$")

# 9,999,999,999.99
MAX_AMOUNT_CENTS = 999_999_999_999
MAX_RECORD_ID = 2**63 - 1

RecordId = Annotated[int, Field(gt=0, le=MAX_RECORD_ID)]


def parse_amount(value: Any) -> int:
    """Parse a user supplied money amount ("42.50", "42,50", 42.5) into cents."""
    if isinstance(value, bool):
        raise ValueError("Invalid amount")
    if isinstance(value, (int, float, Decimal)):
        clean = str(value)
    elif isinstance(value, str):
        clean = value.strip().replace("€", "").replace("$", "").replace(" ", "")
        clean = clean.replace(",", ".")
        if clean.count(".") > 1:
            parts = clean.split(".")
            clean = "".join(parts[:-1]) + "." + parts[-1]
    else:
        raise ValueError("Invalid amount")
    try:
        amount = Decimal(clean)
    except InvalidOperation as exc:
        raise ValueError("Invalid amount") from exc
    if not amount.is_finite():
        raise ValueError("Invalid amount")
    try:
        scaled = amount * 100
        if scaled <= 0:
            raise ValueError("Amount must be greater than zero")
        if scaled > MAX_AMOUNT_CENTS:
            raise ValueError("Amount too large")
        cents = int(scaled.quantize(Decimal("1")))
    except DecimalException as exc:
        raise ValueError("Invalid amount") from exc
    if cents <= 0:
        raise ValueError("Amount must be greater than zero")
    return cents


def format_cents(cents: Optional[int]) -> Optional[str]:
    if cents is None:
        return None
    return f"{Decimal(cents) / 100:.2f}"


def parse_date(value: Any) -> dt.date:
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    if not isinstance(value, str) or not value.strip():
        raise ValueError("Invalid date")
    raw = value.strip()
    # "2024-03-01T00:00:00.000Z" as sent by browser date pickers
    if "T" in raw:
        raw = raw.split("T", 1)[0]
    try:
        return dt.date.fromisoformat(raw)
    except ValueError:
        pass
    try:
        return dt.datetime.strptime(raw, "%d.%m.%Y").date()
    except ValueError as exc:
        raise ValueError("Invalid date") from exc


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    return value


class CommandModel(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)


class _NamedStyleMixin(CommandModel):
    name: str = Field(..., min_length=1, max_length=100)
    color: Optional[str] = None
    icon: Optional[str] = Field(default=None, max_length=50)

    @field_validator("color", "icon", mode="before")
    @classmethod
    def _optional_text(cls, value: Any) -> Any:
        return _blank_to_none(value)

    @field_validator("color")
    @classmethod
    def _hex_color(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not HEX_COLOR.match(value):
            raise ValueError("Color must be a hex value like #6366f1")
        return value


class CategoryIn(_NamedStyleMixin):
    group_id: Optional[RecordId] = None

    @field_validator("group_id", mode="before")
    @classmethod
    def _optional_group(cls, value: Any) -> Any:
        return _blank_to_none(value)


class CategoryUpdate(_NamedStyleMixin):
    pass


class GoalUpdate(_NamedStyleMixin):
    target_amount_cents: Optional[int] = Field(
        default=None, validation_alias="target_amount"
    )
    description: Optional[str] = None

    @field_validator("description", mode="before")
    @classmethod
    def _optional_description(cls, value: Any) -> Any:
        return _blank_to_none(value)

    @field_validator("target_amount_cents", mode="before")
    @classmethod
    def _target(cls, value: Any) -> Optional[int]:
        value = _blank_to_none(value)
        if value is None:
            return None
        return parse_amount(value)


class GoalIn(GoalUpdate):
    group_id: Optional[RecordId] = None

    @field_validator("group_id", mode="before")
    @classmethod
    def _optional_group(cls, value: Any) -> Any:
        return _blank_to_none(value)


class _EntryMixin(CommandModel):
    amount_cents: int = Field(
        ..., gt=0, le=MAX_AMOUNT_CENTS, validation_alias="amount"
    )
    description: Optional[str] = Field(default=None, max_length=500)
    date: dt.date
    paid_by: Optional[RecordId] = None

    @field_validator("amount_cents", mode="before")
    @classmethod
    def _amount(cls, value: Any) -> int:
        if value is None or (isinstance(value, str) and not value.strip()):
            raise ValueError("Amount is required")
        return parse_amount(value)

    @field_validator("date", mode="before")
    @classmethod
    def _date(cls, value: Any) -> dt.date:
        return parse_date(value)

    @field_validator("description", "paid_by", mode="before")
    @classmethod
    def _optional(cls, value: Any) -> Any:
        return _blank_to_none(value)


class ExpenseUpdate(_EntryMixin):
    category_id: RecordId


class ExpenseIn(ExpenseUpdate):
    group_id: Optional[RecordId] = None

    @field_validator("group_id", mode="before")
    @classmethod
    def _optional_group(cls, value: Any) -> Any:
        return _blank_to_none(value)


class SavingUpdate(_EntryMixin):
    goal_id: RecordId


class SavingIn(SavingUpdate):
    group_id: Optional[RecordId] = None

    @field_validator("group_id", mode="before")
    @classmethod
    def _optional_group(cls, value: Any) -> Any:
        return _blank_to_none(value)


class GroupIn(CommandModel):
    name: str = Field(..., min_length=1, max_length=255)


class InviteAcceptIn(CommandModel):
    code: str = Field(..., min_length=1, max_length=32)

    @field_validator("code")
    @classmethod
    def _normalize(cls, value: str) -> str:
        return value.upper()


class RecordFilters(CommandModel):
    group_id: Optional[RecordId] = None
    start: Optional[dt.date] = None
    end: Optional[dt.date] = None

    @field_validator("group_id", mode="before")
    @classmethod
    def _optional_group(cls, value: Any) -> Any:
        return _blank_to_none(value)

    @field_validator("start", "end", mode="before")
    @classmethod
    def _optional_date(cls, value: Any) -> Optional[dt.date]:
        value = _blank_to_none(value)
        if value is None:
            return None
        return parse_date(value)
