"""Shared pydantic configuration for wire models."""

from typing import Any, Dict

from pydantic import BaseModel
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
  """Base model whose JSON form uses camelCase keys.

  Python code uses snake_case attributes; documents produced by the test
  layer (and every artifact we write) use camelCase.
  """

  model_config = {
    'alias_generator': to_camel,
    'populate_by_name': True,
  }

  def to_json_dict(self) -> Dict[str, Any]:
    """Dump to a JSON-compatible dict with camelCase keys."""
    return self.model_dump(mode='json', by_alias=True)

  def to_json(self, indent: int = 2) -> str:
    """Serialize to a camelCase JSON string."""
    return self.model_dump_json(by_alias=True, indent=indent)
