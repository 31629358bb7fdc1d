"""
Pydantic models for catalog products exposed through the public catalog and admin product endpoints.

Copyright (c) 2026 Stefan Kumarasinghe

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at http://www.apache.org/licenses/LICENSE-2.0
"""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class ProductCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=5000)
    price: float = Field(ge=0)
    category: str = Field(min_length=1, max_length=100)
    in_stock: int = Field(default=0, ge=0)


class Product(ProductCreate):
    id: str
    created_at: datetime
    updated_at: datetime
