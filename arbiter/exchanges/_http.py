from __future__ import annotations

from typing import Any

import httpx

from arbiter.errors import QuoteFetchError


def to_float(value: Any) -> float | None:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number != number or number in (float("inf"), float("-inf")):
        return None
    return number


async def get_json(client: httpx.AsyncClient, venue: str, path: str, params: dict[str, str]) -> Any:
    try:
        response = await client.get(path, params=params)
        response.raise_for_status()
        return response.json()
    except httpx.HTTPError as exc:
        raise QuoteFetchError(f"{venue} {path}: {exc}") from exc
    except ValueError as exc:
        raise QuoteFetchError(f"{venue} {path}: malformed JSON") from exc
