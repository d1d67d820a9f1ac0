"""orjson-backed serialization for API responses and audit payloads."""

from typing import Any

import orjson
from fastapi.responses import JSONResponse

# Datetimes render as "...Z"; non-str dict keys (e.g. enums) are allowed
ORJSON_OPTIONS = orjson.OPT_UTC_Z | orjson.OPT_NON_STR_KEYS


def _fallback(obj: Any) -> Any:
    # orjson covers datetime, UUID, Enum and dataclasses itself
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    raise TypeError(f"{type(obj).__name__} is not JSON serializable")


def json_dumps(data: Any) -> str:
    return orjson.dumps(data, default=_fallback, option=ORJSON_OPTIONS).decode()


class ORJSONResponse(JSONResponse):
    """Deterministic JSON response.

    Equal content always renders to the same bytes, so two rejections with
    the same error code cannot be told apart by their bodies.
    """

    def render(self, content: Any) -> bytes:
        return orjson.dumps(content, default=_fallback, option=ORJSON_OPTIONS)
