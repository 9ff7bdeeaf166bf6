from __future__ import annotations

import json
import math
import re
from dataclasses import asdict, dataclass, field
from typing import Any

from receipt_tracker.core.logging import get_logger, log_event
from receipt_tracker.modules.extraction.errors import NoUsableDataError

logger = get_logger(__name__)

_NUMBER_NOISE_RE = re.compile(r"^[^\d\-+.]+")
# "1,234" and "1,234,567.89" group thousands; "12,50" uses a decimal comma.
_THOUSANDS_COMMA_RE = re.compile(r",(?=\d{3}(?:[.,]|$))")

REQUIRED_FIELDS: tuple[str, ...] = (
    "file_display_name",
    "merchant_name",
    "merchant_address",
    "merchant_contact",
    "transaction_date",
    "transaction_amount",
    "currency",
    "items",
)

# file_display_name comes from the upload, not the model, so it cannot make a
# model response usable on its own.
_EXTRACTED_FIELDS: tuple[str, ...] = tuple(f for f in REQUIRED_FIELDS if f != "file_display_name")


@dataclass(frozen=True)
class ReceiptItem:
    name: str = ""
    quantity: float = 0.0
    unit_price: float = 0.0
    total_price: float = 0.0

    def is_blank(self) -> bool:
        return not (self.name or self.quantity or self.unit_price or self.total_price)


@dataclass(frozen=True)
class CanonicalReceiptFields:
    file_display_name: str = ""
    merchant_name: str = ""
    merchant_address: str = ""
    merchant_contact: str = ""
    transaction_date: str = ""
    transaction_amount: str = ""
    currency: str = ""
    receipt_summary: str = ""
    items: tuple[ReceiptItem, ...] = field(default_factory=tuple)
    raw_extracted_data: str = ""

    def missing_fields(self) -> list[str]:
        return [name for name in REQUIRED_FIELDS if not getattr(self, name)]

    def has_usable_data(self) -> bool:
        return any(getattr(self, name) for name in _EXTRACTED_FIELDS)

    def items_as_dicts(self) -> list[dict[str, Any]]:
        return [asdict(item) for item in self.items]

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["items"] = self.items_as_dicts()
        return out


def coerce_string(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            return ""
        if value.is_integer():
            return str(int(value))
        return repr(value)
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, ensure_ascii=False, separators=(",", ":"))
    return str(value)


def coerce_number(value: Any) -> float:
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        cleaned = _THOUSANDS_COMMA_RE.sub("", _NUMBER_NOISE_RE.sub("", value.strip()).strip())
        if cleaned.count(",") == 1 and "." not in cleaned:
            cleaned = cleaned.replace(",", ".")
        try:
            number = float(cleaned)
        except ValueError:
            return 0.0
    else:
        return 0.0
    if math.isnan(number) or math.isinf(number):
        return 0.0
    return number


def coerce_item(value: Any) -> ReceiptItem:
    data = value if isinstance(value, dict) else {}
    return ReceiptItem(
        name=coerce_string(data.get("name")).strip(),
        quantity=coerce_number(data.get("quantity")),
        unit_price=coerce_number(data.get("unit_price")),
        total_price=coerce_number(data.get("total_price")),
    )


def coerce_items(values: Any) -> tuple[ReceiptItem, ...]:
    if not isinstance(values, (list, tuple)):
        return ()
    items = (coerce_item(v) for v in values)
    return tuple(item for item in items if not item.is_blank())


def coerce_receipt(
    mapped: dict[str, Any],
    *,
    file_display_name: str = "",
    raw_extracted_data: str = "",
) -> CanonicalReceiptFields:
    """
    Turn mapper output into typed canonical fields.

    Raises NoUsableDataError when nothing the model returned survived mapping;
    individual missing fields are only logged.
    """
    fields = CanonicalReceiptFields(
        file_display_name=coerce_string(file_display_name).strip(),
        merchant_name=coerce_string(mapped.get("merchant_name")).strip(),
        merchant_address=coerce_string(mapped.get("merchant_address")).strip(),
        merchant_contact=coerce_string(mapped.get("merchant_contact")).strip(),
        transaction_date=coerce_string(mapped.get("transaction_date")).strip(),
        transaction_amount=coerce_string(mapped.get("transaction_amount")).strip(),
        currency=coerce_string(mapped.get("currency")).strip(),
        receipt_summary=coerce_string(mapped.get("receipt_summary")).strip(),
        items=coerce_items(mapped.get("items")),
        raw_extracted_data=raw_extracted_data,
    )

    if not fields.has_usable_data():
        raise NoUsableDataError("Model output contained no usable receipt fields")

    missing = fields.missing_fields()
    if missing:
        log_event(logger, "extraction.fields.missing", missing_fields=missing)
    return fields
