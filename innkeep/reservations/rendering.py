"""Bill formats handed to callers of ``get_bill``.

``data`` returns the :class:`Bill` itself; ``json`` and ``text`` are built in.
Anything else (``pdf``) is an external :data:`BillRenderer` registered with the
service by format name.
"""

from collections.abc import Callable, Mapping

from innkeep.errors import ValidationError
from innkeep.reservations.ledger import format_amount
from innkeep.schemas.bill import Bill

BillRenderer = Callable[[Bill], bytes]

DATA_FORMAT = "data"

_RECEIPT_WIDTH = 48


def render_json(bill: Bill) -> bytes:
    """Canonical JSON bytes; equal bills give identical output."""
    return bill.model_dump_json().encode("utf-8")


def render_text(bill: Bill, currency_label: str = "") -> bytes:
    """Plain-text receipt, the only place amounts are rounded for display."""

    def row(label: str, amount) -> str:
        value = format_amount(amount, currency_label)
        width = max(_RECEIPT_WIDTH - len(value) - 1, len(label))
        return f"{label:<{width}} {value}"

    rule = "-" * _RECEIPT_WIDTH
    out = [
        f"BILL {bill.reference}",
        f"Guest: {bill.guest_name} <{bill.guest_email}>",
        f"Room {bill.room_number}: {bill.check_in.isoformat()} -> {bill.check_out.isoformat()}",
        rule,
    ]
    for i, line in enumerate(bill.lines, start=1):
        out.append(row(f"{i}. {line.description}", line.line_total))
        if line.quantity > 1:
            out.append(f"     {line.quantity} x {format_amount(line.unit_price, currency_label)}")
    out.append(rule)
    out.append(row("Subtotal", bill.subtotal))
    if bill.service_charge:
        out.append(row("Service charge", bill.service_charge))
    if bill.tax:
        out.append(row("Tax", bill.tax))
    out.append(row("TOTAL", bill.grand_total))
    out.append(rule)
    out.append(f"Payment: {bill.payment_status.upper()}   Status: {bill.status}")
    if bill.finalized:
        out.append(f"Finalized {bill.issued_at.isoformat()}")
    return ("\n".join(out) + "\n").encode("utf-8")


def render_bill(
    bill: Bill,
    fmt: str,
    *,
    renderers: Mapping[str, BillRenderer] | None = None,
    currency_label: str = "",
) -> Bill | bytes:
    """Dispatch ``bill`` to the renderer for ``fmt``."""
    fmt = (fmt or DATA_FORMAT).lower()
    if fmt == DATA_FORMAT:
        return bill
    if fmt == "json":
        return render_json(bill)
    if fmt == "text":
        return render_text(bill, currency_label)
    if renderers and fmt in renderers:
        return renderers[fmt](bill)

    supported = sorted({DATA_FORMAT, "json", "text", *(renderers or {})})
    raise ValidationError(f"Unsupported bill format '{fmt}'", field="format", supported=supported)
