from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel


class CombinationSchema(BaseModel):
    id: Optional[UUID] = None
    combination_key: str
    input_a: str
    input_b: str
    result_name: str
    result_glyph: str
    origin: str
    discovered_by: Optional[str] = None
    use_count: int = 0
    created_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ElementSummarySchema(BaseModel):
    name: str
    glyph: str
    is_starter: bool = False

    class Config:
        from_attributes = True


class RecipeSchema(BaseModel):
    input_a: str
    input_b: str
    result_name: str
    result_glyph: str
    use_count: int = 0
    discovered_by: Optional[str] = None

    class Config:
        from_attributes = True


class ElementDetailSchema(BaseModel):
    name: str
    glyph: str
    is_starter: bool
    ways_to_create: list[RecipeSchema]
    used_in: list[RecipeSchema]
    total_uses: int


class ElementIndexSchema(BaseModel):
    elements: list[ElementSummarySchema]
    total: int
    page: int
    limit: int
    total_pages: int
    letter: str
    letter_counts: Optional[dict[str, int]] = None
