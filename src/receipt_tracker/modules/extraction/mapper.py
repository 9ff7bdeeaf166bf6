from __future__ import annotations

import re
from typing import Any

from receipt_tracker.modules.extraction.coercion import coerce_number, coerce_string
from receipt_tracker.modules.extraction.json_value import JsonValue

DEFAULT_CURRENCY = "$"
HIGH_VALUE_THRESHOLD = 100
BULK_ITEM_THRESHOLD = 5
SUMMARY_ITEM_NAMES = 3

_AMOUNT_PREFIX_RE = re.compile(r"^([^\d\-+.\s]+)\s*(?=[\d\-+.])")

# Candidate source paths per canonical field, most specific first.
FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "merchant_name": (
        "issuer.name",
        "merchant_name",
        "merchant.name",
        "vendor.name",
        "vendor_name",
        "store_name",
        "issued_to.name",
    ),
    "merchant_address": (
        "issuer.address",
        "merchant_address",
        "merchant.address",
        "vendor.address",
        "store_address",
        "issued_to.address",
    ),
    "merchant_contact": (
        "issuer.phone",
        "issuer.contact",
        "issuer.email",
        "merchant_contact",
        "merchant_phone",
        "merchant.phone",
        "merchant.contact",
        "vendor.phone",
    ),
    "transaction_date": (
        "date",
        "transaction_date",
        "invoice_date",
        "issue_date",
        "receipt_date",
        "transaction.date",
    ),
    "transaction_amount": (
        "grand_total",
        "total_amount",
        "amount",
        "total",
        "transaction.total",
        "totals.grand_total",
        "totals.total",
    ),
    "currency": (
        "currency",
        "currency_code",
        "transaction.currency",
        "totals.currency",
    ),
    "receipt_summary": ("note", "summary", "receipt_summary", "notes"),
    "payment": (
        "payment_method",
        "payment.method",
        "bank.name",
        "bank_name",
        "payment.bank",
    ),
}

ITEM_LIST_ALIASES: tuple[str, ...] = ("line_items", "items", "products")

ITEM_FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "name": ("description", "name", "item"),
    "quantity": ("qty", "quantity"),
    "unit_price": ("price", "unit_price", "unit_cost"),
    "total_price": ("subtotal", "total", "amount", "total_price"),
}


def _lookup(record: JsonValue, field: str) -> Any:
    # An object under a scalar alias (e.g. "total": {"amount": ...}) is not a value.
    return record.first(*FIELD_ALIASES[field], scalar=True).unwrap()


def map_item(entry: JsonValue) -> dict[str, Any]:
    return {
        name: entry.first(*aliases, scalar=True).unwrap()
        for name, aliases in ITEM_FIELD_ALIASES.items()
    }


def map_items(record: JsonValue) -> list[dict[str, Any]]:
    for alias in ITEM_LIST_ALIASES:
        items = record.path(alias)
        if items.is_array:
            return [map_item(entry) for entry in items.elements() if entry.is_object]
    return []


def map_vendor_record(payload: dict[str, Any] | JsonValue) -> dict[str, Any]:
    """
    Project a vendor-shaped record onto canonical field names.

    Values stay raw; typing is left to coercion. A summary is synthesized
    when the record does not carry one.
    """
    record = payload if isinstance(payload, JsonValue) else JsonValue.of(payload)

    mapped: dict[str, Any] = {
        field: _lookup(record, field)
        for field in (
            "merchant_name",
            "merchant_address",
            "merchant_contact",
            "transaction_date",
            "transaction_amount",
            "currency",
            "receipt_summary",
        )
    }
    mapped["items"] = map_items(record)

    # A bare currency with no amount says nothing about the receipt.
    amount = coerce_string(mapped["transaction_amount"]).strip()
    if mapped["currency"] is None and amount:
        mapped["currency"] = split_amount(amount)[0] or DEFAULT_CURRENCY

    if not coerce_string(mapped["receipt_summary"]).strip():
        mapped["receipt_summary"] = synthesize_summary(
            mapped, payment=_lookup(record, "payment")
        )
    return mapped


def split_amount(amount: str) -> tuple[str, str]:
    """Split "$50" or "USD 50" into the currency prefix and the number text."""
    m = _AMOUNT_PREFIX_RE.match(amount)
    if not m:
        return "", amount
    return m.group(1), amount[m.end() :]


def _join_names(names: list[str]) -> str:
    if len(names) == 1:
        return names[0]
    return ", ".join(names[:-1]) + " and " + names[-1]


def synthesize_summary(mapped: dict[str, Any], *, payment: Any = None) -> str:
    merchant = coerce_string(mapped.get("merchant_name")).strip()
    address = coerce_string(mapped.get("merchant_address")).strip()
    tx_date = coerce_string(mapped.get("transaction_date")).strip()
    amount = coerce_string(mapped.get("transaction_amount")).strip()
    currency = coerce_string(mapped.get("currency")).strip()
    if currency:
        amount = split_amount(amount)[1]
    money = f"{currency} {amount}" if currency[-1:].isalpha() else f"{currency}{amount}"
    items = mapped.get("items") or []
    names = [
        coerce_string(item.get("name")).strip()
        for item in items
        if isinstance(item, dict) and coerce_string(item.get("name")).strip()
    ]

    sentences: list[str] = []
    opening = f"This receipt is from {merchant or 'an unknown merchant'}"
    if address:
        opening += f", located at {address}"
    sentences.append(opening + ".")

    if tx_date and amount:
        sentences.append(f"The transaction took place on {tx_date} for a total of {money}.")
    elif tx_date:
        sentences.append(f"The transaction took place on {tx_date}.")
    elif amount:
        sentences.append(f"The total amount was {money}.")

    if items:
        noun = "item" if len(items) == 1 else "items"
        sentence = f"It includes {len(items)} {noun}"
        if names and len(names) <= SUMMARY_ITEM_NAMES:
            sentence += f": {_join_names(names)}"
        elif names:
            shown = ", ".join(names[:SUMMARY_ITEM_NAMES])
            sentence += f", including {shown} and {len(names) - SUMMARY_ITEM_NAMES} more"
        sentences.append(sentence + ".")

    if coerce_number(amount) > HIGH_VALUE_THRESHOLD:
        sentences.append("This is a high-value purchase.")
    if len(items) > BULK_ITEM_THRESHOLD:
        sentences.append("The number of items suggests bulk shopping.")
    payment_name = coerce_string(payment).strip()
    if payment_name:
        sentences.append(f"Payment was made using {payment_name}.")

    return " ".join(sentences)
