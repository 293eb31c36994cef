"""Dashboard read models. These never touch the fulfillment workflow."""
from typing import Dict, List

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from fulfillment.models import Color, Gender, Material, Order, OrderItem, Product, Size

ATTRIBUTES = {
    "color": (Color, Product.color_id),
    "size": (Size, Product.size_id),
    "material": (Material, Product.material_id),
    "gender": (Gender, Product.gender_id),
}


def top_selling(db: Session, store_id: str, attribute: str) -> List[Dict[str, object]]:
    """Count ordered items per attribute value for one store, best sellers first."""
    if attribute not in ATTRIBUTES:
        raise ValueError(f"Unknown attribute {attribute!r}; expected one of {sorted(ATTRIBUTES)}")
    table, product_column = ATTRIBUTES[attribute]

    count = func.count(OrderItem.id).label("count")
    stmt = (
        select(table.name, count)
        .select_from(Order)
        .join(OrderItem, OrderItem.order_id == Order.id)
        .join(Product, OrderItem.product_id == Product.id)
        .join(table, product_column == table.id)
        .where(Order.store_id == store_id)
        .group_by(table.name)
        .order_by(count.desc(), table.name)
    )
    return [{"name": name, "count": int(total)} for name, total in db.execute(stmt)]
