# restopos/ordering/cart.py
from __future__ import annotations

from typing import Iterable, List, Sequence, Tuple, Union

from ..domain import CartItem, Order, OrderItem

Line = Union[CartItem, OrderItem]


def line_total(line: Line) -> float:
    return round(int(line.quantity or 1) * float(line.price or 0.0), 2)


def cart_total(lines: Iterable[Line]) -> float:
    return round(sum(line_total(x) for x in lines), 2)


def merge_line(cart: Sequence[CartItem], new: CartItem) -> List[CartItem]:
    """Same menu item with the same name and notes stacks onto the existing line."""
    out: List[CartItem] = []
    merged = False
    for line in cart:
        if not merged and (line.menu_item_id, line.name, line.notes) == (new.menu_item_id, new.name, new.notes):
            out.append(line.model_copy(update={"quantity": line.quantity + new.quantity}))
            merged = True
        else:
            out.append(line)
    if not merged:
        out.append(new)
    return out


def merge_lines(lines: Iterable[CartItem]) -> List[CartItem]:
    cart: List[CartItem] = []
    for line in lines:
        cart = merge_line(cart, line)
    return cart


def build_summary(lines: Sequence[Line], currency_symbol: str = "R$") -> Tuple[str, float]:
    if not lines:
        return ("No items.", 0.0)

    rows: List[str] = []
    for i, line in enumerate(lines, start=1):
        rows.append(f"{i}. x{line.quantity} {line.name} = {currency_symbol}{line_total(line):.2f}")
        if line.notes:
            rows.append(f"   ({line.notes})")

    total = cart_total(lines)
    return ("\n".join(rows) + f"\n\nTotal: {currency_symbol}{total:.2f}", total)


def order_header(order: Order) -> str:
    short = order.id[:6]
    who = order.customer_name or "-"
    return f"Order #{short} [{order.order_type.value}] {who}"
