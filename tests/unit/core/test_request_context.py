"""Tests for request correlation ids."""

import asyncio
import contextvars
import logging

import pytest

from app.core.request_context import RequestIdFilter, get_request_id, new_request_id


class TestRequestId:
    def test_uses_incoming_header(self):
        assert new_request_id("abc123") == "abc123"
        assert get_request_id() == "abc123"

    def test_generates_when_missing(self):
        request_id = new_request_id(None)
        assert len(request_id) == 32
        assert get_request_id() == request_id

    @pytest.mark.asyncio
    async def test_task_local(self):
        async def handle(incoming: str) -> str | None:
            new_request_id(incoming)
            await asyncio.sleep(0)
            return get_request_id()

        results = await asyncio.gather(handle("req-a"), handle("req-b"))
        assert results == ["req-a", "req-b"]


class TestRequestIdFilter:
    def _record(self) -> logging.LogRecord:
        return logging.LogRecord("app", logging.INFO, __file__, 1, "hello", None, None)

    def test_outside_request(self):
        record = self._record()
        # An empty context stands in for code running outside any request
        contextvars.Context().run(RequestIdFilter().filter, record)
        assert record.request_id == "-"

    def test_inside_request(self):
        new_request_id("req-1")
        record = self._record()
        assert RequestIdFilter().filter(record) is True
        assert record.request_id == "req-1"
