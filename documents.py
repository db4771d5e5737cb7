import logging
import os
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape
from markupsafe import Markup

logger = logging.getLogger(__name__)

TEMPLATE_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "templates")

env = Environment(
    loader=FileSystemLoader(TEMPLATE_DIR),
    autoescape=select_autoescape(["html"]),
)

LETTERHEAD_DEFAULTS = {
    "company_name": "artistiya.store",
    "company_address": "Dhaka, Bangladesh",
    "company_email": "hello@artistiya.store",
    "company_phone": "+880 1XXX-XXXXXX",
    "company_tagline": "Handcrafted with love",
    "footer_note": "Thank you for your purchase!",
    "terms_and_conditions": "",
    "logo_url": None,
    "digital_signature_url": None,
    "signatory_name": None,
    "signatory_title": None,
    "social_facebook": None,
    "social_instagram": None,
    "social_whatsapp": None,
    "social_website": None,
}


def format_amount(value: Any) -> str:
    """1080 -> "1,080", 1080.5 -> "1,080.5"; the currency sign is added by the templates."""
    amount = Decimal(str(value or 0)).quantize(Decimal("0.01"))
    if amount == amount.to_integral_value():
        return f"{int(amount):,}"
    return f"{amount:,.2f}".rstrip("0")


def format_date(value: Optional[datetime]) -> str:
    return value.strftime("%d %b %Y") if value else ""


def resolve_letterhead(settings) -> Dict[str, Any]:
    """Merge an ``invoice_settings`` row (or None) over the default letterhead."""
    letterhead = dict(LETTERHEAD_DEFAULTS)
    letterhead["show_social_links"] = True

    if settings is None:
        return letterhead

    for key in LETTERHEAD_DEFAULTS:
        value = getattr(settings, key, None)
        if value:
            letterhead[key] = value

    if getattr(settings, "show_social_links", None) is not None:
        letterhead["show_social_links"] = bool(settings.show_social_links)
    return letterhead


def social_links(letterhead: Dict[str, Any]):
    if not letterhead["show_social_links"]:
        return []

    links = []
    if letterhead["social_facebook"]:
        links.append(("Facebook", letterhead["social_facebook"]))
    if letterhead["social_instagram"]:
        links.append(("Instagram", letterhead["social_instagram"]))
    if letterhead["social_whatsapp"]:
        links.append(("WhatsApp", f"https://wa.me/{letterhead['social_whatsapp']}"))
    if letterhead["social_website"]:
        links.append(("Website", letterhead["social_website"]))
    return links


def barcode_svg(data: str, width: int = 200, height: int = 50) -> Markup:
    """Deterministic bar pattern derived from the characters of ``data``."""
    pattern = []
    for char in data or "":
        code = ord(char)
        pattern.extend([(code % 3) + 1, ((code >> 2) % 2) + 1])

    parts = [
        f'<svg xmlns="http://www.w3.org/2000/svg" width="{width}" height="{height}" viewBox="0 0 {width} {height}">',
        f'<rect width="{width}" height="{height}" fill="white"/>',
    ]

    total_units = sum(pattern)
    if total_units:
        unit_width = (width - 20) / total_units
        x = 10.0
        for i, units in enumerate(pattern):
            if i % 2 == 0:
                parts.append(
                    f'<rect x="{x:.2f}" y="5" width="{units * unit_width:.2f}" height="{height - 10}" fill="black"/>'
                )
            x += units * unit_width

    parts.append("</svg>")
    return Markup("".join(parts))


def _line_items(items: Iterable) -> list:
    rows = []
    for item in items:
        price = Decimal(str(item.product_price or 0))
        quantity = int(item.quantity or 0)
        rows.append({
            "name": item.product_name,
            "quantity": quantity,
            "price": price,
            "line_total": price * quantity,
        })
    return rows


def _is_cod(order) -> bool:
    return (order.payment_method or "").lower() == "cod"


def _status_label(order) -> str:
    status = getattr(order.status, "value", order.status)
    return (status or "pending").upper()


def render_invoice(order, items, address, invoice_settings, issued_at: Optional[datetime] = None) -> str:
    letterhead = resolve_letterhead(invoice_settings)
    rows = _line_items(items)

    subtotal = sum((row["line_total"] for row in rows), Decimal("0"))
    order_subtotal = Decimal(str(order.subtotal)) if order.subtotal else subtotal
    discount = subtotal - order_subtotal

    template = env.get_template("invoice.html")
    return template.render(
        order=order,
        address=address,
        items=rows,
        letterhead=letterhead,
        social_links=social_links(letterhead),
        is_cod=_is_cod(order),
        payment_method=(order.payment_method or "").upper(),
        status_label=_status_label(order),
        subtotal=subtotal,
        discount=discount,
        shipping=order.shipping_cost or 0,
        total=order.total,
        invoice_date=format_date(issued_at or datetime.now()),
        order_date=format_date(order.created_at),
        barcode=barcode_svg(order.order_number, 200, 45),
        signed=bool(letterhead["digital_signature_url"] or letterhead["signatory_name"]),
    )


def render_delivery_slip(order, items, address, invoice_settings, printed_at: Optional[datetime] = None) -> str:
    letterhead = resolve_letterhead(invoice_settings)
    rows = _line_items(items)
    printed_at = printed_at or datetime.now()

    template = env.get_template("delivery_slip.html")
    return template.render(
        order=order,
        address=address,
        items=rows,
        letterhead=letterhead,
        is_cod=_is_cod(order),
        total=order.total,
        total_quantity=sum(row["quantity"] for row in rows),
        order_date=format_date(order.created_at),
        print_date=printed_at.strftime("%d %b %Y, %H:%M"),
        barcode=barcode_svg(order.order_number, 160, 38),
    )


env.filters["amount"] = format_amount
