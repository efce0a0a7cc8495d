"""Conditional stock decrements across the three product catalogs.

Each routine is one ``UPDATE ... WHERE stock >= :qty`` statement; the check
is the decrement, so concurrent purchases can never drive a counter below
zero. All routines run inside the caller's transaction.
"""

from dataclasses import asdict, dataclass
from typing import Callable, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from fulfillment.domain.exceptions import InsufficientStockError
from fulfillment.domain.models import CatalogSource, Coffee, CoffeeVariant, Equipment
from shared.core import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class StockChange:
    product_id: str
    source: str
    quantity: int
    before: int
    after: int
    parent_id: Optional[str] = None

    def as_dict(self) -> dict:
        return {key: value for key, value in asdict(self).items() if value is not None}


def _decrement_variant(db: Session, product_id: str, quantity: int) -> StockChange:
    row = db.execute(
        update(CoffeeVariant)
        .where(CoffeeVariant.id == product_id, CoffeeVariant.stock >= quantity)
        .values(stock=CoffeeVariant.stock - quantity)
        .returning(CoffeeVariant.stock, CoffeeVariant.coffee_id)
        .execution_options(synchronize_session=False)
    ).first()
    if row is None:
        raise InsufficientStockError(product_id, CatalogSource.VARIANT.value, quantity)

    if row.coffee_id is not None:
        # parent roll-up across variants, guarded like the variant itself
        rolled_up = db.execute(
            update(Coffee)
            .where(Coffee.id == row.coffee_id, Coffee.total_stock >= quantity)
            .values(total_stock=Coffee.total_stock - quantity)
            .execution_options(synchronize_session=False)
        ).rowcount
        if not rolled_up:
            logger.warning(f"Roll-up stock of coffee {row.coffee_id} is behind variant {product_id}")
            raise InsufficientStockError(row.coffee_id, CatalogSource.COFFEE.value, quantity)
    return StockChange(product_id, CatalogSource.VARIANT.value, quantity,
                       before=row.stock + quantity, after=row.stock, parent_id=row.coffee_id)


def _decrement_coffee(db: Session, product_id: str, quantity: int) -> StockChange:
    after = db.execute(
        update(Coffee)
        .where(Coffee.id == product_id, Coffee.stock >= quantity)
        .values(stock=Coffee.stock - quantity)
        .returning(Coffee.stock)
        .execution_options(synchronize_session=False)
    ).scalar_one_or_none()
    if after is None:
        raise InsufficientStockError(product_id, CatalogSource.COFFEE.value, quantity)
    return StockChange(product_id, CatalogSource.COFFEE.value, quantity, before=after + quantity, after=after)


def _decrement_equipment(db: Session, product_id: str, quantity: int) -> StockChange:
    # primary key first, then the slug, same conditional update on both paths
    for key in (Equipment.id, Equipment.slug):
        row = db.execute(
            update(Equipment)
            .where(key == product_id, Equipment.total_stock >= quantity)
            .values(total_stock=Equipment.total_stock - quantity)
            .returning(Equipment.id, Equipment.total_stock)
            .execution_options(synchronize_session=False)
        ).first()
        if row is not None:
            return StockChange(row.id, CatalogSource.EQUIPMENT.value, quantity,
                               before=row.total_stock + quantity, after=row.total_stock)
    raise InsufficientStockError(product_id, CatalogSource.EQUIPMENT.value, quantity)


ROUTINES: dict[CatalogSource, Callable[[Session, str, int], StockChange]] = {
    CatalogSource.VARIANT: _decrement_variant,
    CatalogSource.COFFEE: _decrement_coffee,
    CatalogSource.EQUIPMENT: _decrement_equipment,
}


def decrement_stock(db: Session, product_id: str, source: CatalogSource, quantity: int) -> StockChange:
    """Take ``quantity`` units of ``product_id`` out of its catalog or raise ``InsufficientStockError``."""
    if quantity <= 0:
        raise ValueError(f"quantity must be positive, got {quantity}")
    change = ROUTINES[CatalogSource(source)](db, product_id, quantity)
    logger.info(
        f"Stock decremented for {change.source} {change.product_id}",
        extra={'extra_fields': change.as_dict()}
    )
    return change
