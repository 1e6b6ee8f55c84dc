"""
SSE 解析测试
"""

import pytest

from src.byok.sse import SSEParser, iter_sse_events


class TestSSEParser:
    """测试跨块行缓冲与事件切分"""

    def test_split_across_chunks(self):
        parser = SSEParser()

        assert parser.feed("event: message_start\nda") == []
        events = parser.feed(b'ta: {"a": 1}\n\ndata: [DONE]\n\n')

        assert len(events) == 2
        assert events[0].event == "message_start"
        assert events[0].json() == {"a": 1}
        assert events[1].done
        assert events[1].json() is None

    def test_multiline_data_and_comments(self):
        parser = SSEParser()
        events = parser.feed(": keepalive\r\ndata: line1\r\ndata: line2\r\n\r\n")

        assert len(events) == 1
        assert events[0].data == "line1\nline2"
        assert events[0].json() is None

    def test_flush_without_trailing_blank_line(self):
        parser = SSEParser()
        assert parser.feed('data: {"x": true}') == []

        events = parser.flush()
        assert [e.json() for e in events] == [{"x": True}]
        assert parser.flush() == []


class TestIterSSEEvents:
    """测试异步事件流"""

    @pytest.mark.asyncio
    async def test_iter(self):
        async def source():
            yield b"data: {\"n\": 1}\n"
            yield b""
            yield b"\ndata: {\"n\": 2}"

        events = [e async for e in iter_sse_events(source())]
        assert [e.json() for e in events] == [{"n": 1}, {"n": 2}]
