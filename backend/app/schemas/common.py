from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict


class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


T = TypeVar('T')


class ItemListResponse(BaseModel, Generic[T]):
    items: list[T]
    total: int = 0
