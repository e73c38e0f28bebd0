"""
backend/tests/test_main_handlers.py

Purpose:
    App-level exception handlers: registry errors keep their message, other
    ValueErrors stay generic, database outages map to 503.
"""

from __future__ import annotations

import json

import pytest
from pymongo.errors import ServerSelectionTimeoutError
from starlette.requests import Request

from sportsync import main
from sportsync.services.entity_registry import InvalidFilterError, UnknownEntityTypeError, get_entity_spec


def _request(path: str = "/api/admin/sync/players/diff") -> Request:
    return Request({"type": "http", "method": "GET", "path": path, "headers": [], "query_string": b""})


def _handler_for(exc: Exception):
    for cls in type(exc).__mro__:
        if cls in main.app.exception_handlers:
            return main.app.exception_handlers[cls]
    raise AssertionError(f"no handler for {type(exc).__name__}")


@pytest.mark.asyncio
async def test_unknown_entity_type_message_is_returned():
    with pytest.raises(UnknownEntityTypeError) as exc_info:
        get_entity_spec("players")
    handler = _handler_for(exc_info.value)

    response = await handler(_request(), exc_info.value)

    assert handler is main.registry_error_handler
    assert response.status_code == 400
    assert "Unknown entity type 'players'" in json.loads(response.body)["detail"]


@pytest.mark.asyncio
async def test_invalid_filter_message_is_returned():
    exc = InvalidFilterError("Filter 'from' must be a YYYY-MM-DD date.")

    response = await _handler_for(exc)(_request(), exc)

    assert response.status_code == 400
    assert json.loads(response.body) == {"detail": "Filter 'from' must be a YYYY-MM-DD date."}


@pytest.mark.asyncio
async def test_plain_value_error_stays_generic():
    exc = ValueError("internal detail")

    response = await _handler_for(exc)(_request(), exc)

    assert response.status_code == 400
    assert json.loads(response.body) == {"detail": "Invalid input."}


@pytest.mark.asyncio
async def test_database_timeout_maps_to_503():
    exc = ServerSelectionTimeoutError("no primary")

    response = await _handler_for(exc)(_request(), exc)

    assert response.status_code == 503
