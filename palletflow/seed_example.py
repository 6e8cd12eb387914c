import argparse

from sqlalchemy import select

from palletflow.db import SessionLocal, engine
from palletflow.models import Base, Product
from palletflow.services.inventory_service import seed_locations

SAMPLE_PRODUCTS = [
    ('ABC123', 'Widget A', 10, 1),
    ('DEF456', 'Widget B', 20, 2),
    ('GHI789', 'Gadget C', 48, 1),
]


def seed(*, with_products: bool) -> tuple[int, int]:
    Base.metadata.create_all(bind=engine)
    with SessionLocal() as db:
        locations = seed_locations(db)

        products = 0
        if with_products:
            existing = set(db.execute(select(Product.item_id)).scalars().all())
            for item_id, description, units_per_pallet, pallet_positions in SAMPLE_PRODUCTS:
                if item_id in existing:
                    continue
                db.add(
                    Product(
                        item_id=item_id,
                        description=description,
                        units_per_pallet=units_per_pallet,
                        pallet_positions=pallet_positions,
                        active=True,
                    )
                )
                products += 1

        db.commit()
    return locations, products


def main() -> None:
    parser = argparse.ArgumentParser(description='Create tables, warehouse locations and sample products.')
    parser.add_argument('--no-products', action='store_true', help='Only create tables and locations.')
    args = parser.parse_args()

    locations, products = seed(with_products=not args.no_products)
    print(f'Seed complete: locations={locations}, products={products}')


if __name__ == '__main__':
    main()
