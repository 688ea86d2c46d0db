"""JSON-like value types used at the JSON-RPC wire boundary.

Frames are decoded into these aliases before they are classified, so every
value that crosses the pipe to the analysis server has an explicitly
JSON-compatible shape.
"""

from __future__ import annotations

from typing import TypeAlias


JSONScalar: TypeAlias = str | int | float | bool | None
JSONValue: TypeAlias = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]
JSONObject: TypeAlias = dict[str, JSONValue]
JSONArray: TypeAlias = list[JSONValue]
RequestId: TypeAlias = int | str
