"""
Catalog product storage used by the product endpoints.

Copyright (c) 2026 Stefan Kumarasinghe

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at http://www.apache.org/licenses/LICENSE-2.0
"""

import logging
from typing import List, Optional

from database import get_db_session
from db_models import Product as ProductDB
from models.catalog.products import Product, ProductCreate

logger = logging.getLogger(__name__)


def _to_pydantic(row: ProductDB) -> Product:
    return Product(
        id=row.id,
        name=row.name,
        description=row.description,
        price=row.price,
        category=row.category,
        in_stock=row.in_stock,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class ProductService:

    def list_products(self, *, category: Optional[str] = None, limit: int = 50, offset: int = 0) -> List[Product]:
        with get_db_session() as db:
            q = db.query(ProductDB)
            if category:
                q = q.filter(ProductDB.category == category)
            rows = q.order_by(ProductDB.name.asc()).limit(limit).offset(offset).all()
            return [_to_pydantic(r) for r in rows]

    def get_product(self, product_id: str) -> Optional[Product]:
        with get_db_session() as db:
            row = db.get(ProductDB, product_id)
            return _to_pydantic(row) if row else None

    def create_product(self, payload: ProductCreate) -> Product:
        with get_db_session() as db:
            row = ProductDB(**payload.model_dump())
            db.add(row)
            db.flush()
            return _to_pydantic(row)

    def delete_product(self, product_id: str) -> bool:
        with get_db_session() as db:
            row = db.get(ProductDB, product_id)
            if row is None:
                return False
            db.delete(row)
            logger.info("Deleted product %s", product_id)
            return True


product_service = ProductService()
