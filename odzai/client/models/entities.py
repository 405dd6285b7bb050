"""Domain entities exchanged with the collection endpoints.

Every entity carries a string ``id``; everything else is schema-validated so
that optimistic merges only ever touch declared fields.
"""

from __future__ import annotations

import datetime as dt
from collections.abc import Mapping
from typing import Any, TypeVar

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field


class Entity(BaseModel):
    """Base for anything stored in a collection endpoint."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str


E = TypeVar("E", bound=Entity)


class Account(Entity):
    name: str
    type: str | None = None
    balance: float = 0
    on_budget: bool = Field(default=True, alias="onBudget")
    closed: bool = False


class Category(Entity):
    name: str
    group_id: str | None = Field(default=None, alias="groupId")
    hidden: bool = False


class Transaction(Entity):
    account_id: str = Field(alias="accountId")
    date: dt.date
    amount: float
    payee: str | None = None
    category_id: str | None = Field(default=None, alias="categoryId")
    notes: str | None = None
    cleared: bool = False


def known_fields(model: type[BaseModel], changes: Mapping[str, Any]) -> dict[str, Any]:
    """Return the subset of *changes* that maps onto declared model fields.

    Keys may be given by field name or by alias; the result is keyed by
    field name.  Unknown keys are dropped.
    """
    by_alias = {info.alias: name for name, info in model.model_fields.items() if info.alias}
    result: dict[str, Any] = {}
    for key, value in changes.items():
        name = key if key in model.model_fields else by_alias.get(key)
        if name is None:
            logger.debug("Ignoring unknown field {!r} for {}", key, model.__name__)
            continue
        result[name] = value
    return result


def merge_entity(item: E, changes: Mapping[str, Any]) -> E:
    """Return a copy of *item* with the known fields of *changes* applied."""
    return item.model_copy(update=known_fields(type(item), changes))


def build_entity(model: type[E], changes: Mapping[str, Any]) -> E:
    """Build an unsaved entity for an optimistic insert.

    The server has not assigned an id yet, so it defaults to ``""``.  Every
    other required field must be present: raises ``ValidationError`` rather
    than putting a half-built entity into local state.
    """
    fields = known_fields(model, changes)
    fields.setdefault("id", "")
    return model.model_validate(fields)
