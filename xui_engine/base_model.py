from typing import Any, Dict, Iterable, List, Mapping, Self

import pydantic


class BaseModel(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(populate_by_name=True)

    @classmethod
    def from_list(cls, args: List[Dict[str, Any]]) -> List[Self]:
        return [cls(**obj) for obj in args]

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Self:
        """Build a model from a database row (sqlite3.Row or a plain dict)"""
        return cls.model_validate(dict(row))

    @classmethod
    def from_rows(cls, rows: Iterable[Mapping[str, Any]]) -> List[Self]:
        return [cls.from_row(row) for row in rows]

    def dump(self) -> Dict[str, Any]:
        """Dump with API aliases, leaving out unset optional fields."""
        return self.model_dump(by_alias=True, exclude_none=True)
