# restopos/printing.py
"""Kitchen ticket / order receipt rendering and the spool-directory printer."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

from .domain import Order
from .ordering.cart import build_summary, order_header

logger = logging.getLogger(__name__)

PRINT_TYPES = ("kitchen", "order")


def render_ticket(order: Order, print_type: str, currency_symbol: str = "R$") -> str:
    if print_type not in PRINT_TYPES:
        raise ValueError(f"Unknown print type: {print_type}")

    lines = [order_header(order)]
    if order.order_time:
        lines.append(order.order_time.strftime("%Y-%m-%d %H:%M"))

    if print_type == "kitchen":
        lines.append("")
        for item in order.items:
            lines.append(f"{item.quantity}x {item.name}")
            if item.notes:
                lines.append(f"   ({item.notes})")
        if order.notes:
            lines += ["", f"Notes: {order.notes}"]
        return "\n".join(lines) + "\n"

    summary, _total = build_summary(order.items, currency_symbol=currency_symbol)
    lines += ["", summary]
    if order.customer_address:
        lines.append(f"Deliver to: {order.customer_address}")
    if order.payment_method:
        lines.append(f"Payment: {order.payment_method.value}")
        if order.amount_paid is not None:
            lines.append(f"Paid: {currency_symbol}{order.amount_paid:.2f}")
        if order.change_due:
            lines.append(f"Change: {currency_symbol}{order.change_due:.2f}")
    return "\n".join(lines) + "\n"


class SpoolPrinter:
    """Writes one file per ticket into a spool directory that a print agent drains."""

    def __init__(self, spool_dir: str, currency_symbol: str = "R$") -> None:
        self.spool_dir = Path(spool_dir)
        self.currency_symbol = currency_symbol

    def print_order(self, order: Order, currency_symbol: Optional[str] = None) -> List[Path]:
        symbol = currency_symbol or self.currency_symbol
        self.spool_dir.mkdir(parents=True, exist_ok=True)

        written: List[Path] = []
        for print_type in PRINT_TYPES:
            path = self.spool_dir / f"{order.id}-{print_type}.txt"
            path.write_text(render_ticket(order, print_type, symbol), encoding="utf-8")
            written.append(path)
        logger.info("Spooled %d tickets for order %s", len(written), order.id)
        return written


class NullPrinter:
    def print_order(self, order: Order, currency_symbol: Optional[str] = None) -> List[Path]:
        return []


def make_printer(spool_dir: Optional[str], currency_symbol: str, enabled: bool):
    if not enabled or not spool_dir:
        return NullPrinter()
    return SpoolPrinter(spool_dir, currency_symbol=currency_symbol)
