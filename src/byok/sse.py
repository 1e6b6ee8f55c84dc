# -*- coding: utf-8 -*-
"""
SSE 解析
========

上游（OpenAI / Anthropic / Gemini ?alt=sse）都使用 text/event-stream：

    event: content_block_delta
    data: {"type":"content_block_delta",...}

    data: [DONE]

SSEParser 负责跨块的行缓冲，按空行切分事件，多行 data 以 "\\n" 拼接。
"""

import json
from dataclasses import dataclass
from typing import Any, AsyncIterator, List, Optional, Union

__all__ = [
    "SSEEvent",
    "SSEParser",
    "iter_sse_events",
]


@dataclass
class SSEEvent:
    event: str = ""
    data: str = ""

    @property
    def done(self) -> bool:
        return self.data.strip() == "[DONE]"

    def json(self) -> Optional[Any]:
        """data 解析为 JSON；非 JSON 或 [DONE] 返回 None"""
        if not self.data or self.done:
            return None
        try:
            return json.loads(self.data)
        except json.JSONDecodeError:
            return None


class SSEParser:
    """
    SSE 流解析器

    处理分块的 SSE 数据，支持跨块的行缓冲。
    """

    def __init__(self):
        self.buffer = ""
        self._event = ""
        self._data: List[str] = []

    def _dispatch(self) -> Optional[SSEEvent]:
        if not self._data and not self._event:
            return None
        ev = SSEEvent(event=self._event, data="\n".join(self._data))
        self._event = ""
        self._data = []
        return ev

    def _feed_line(self, line: str, events: List[SSEEvent]) -> None:
        if line.endswith("\r"):
            line = line[:-1]
        if not line:
            ev = self._dispatch()
            if ev is not None:
                events.append(ev)
            return
        if line.startswith(":"):
            return
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            self._event = value.strip()
        elif field == "data":
            self._data.append(value)

    def feed(self, chunk: Union[str, bytes]) -> List[SSEEvent]:
        """
        输入数据块，返回解析出的完整事件列表

        Args:
            chunk: 数据块（bytes 按 utf-8 解码）
        """
        if isinstance(chunk, bytes):
            chunk = chunk.decode("utf-8", errors="ignore")
        self.buffer += chunk
        events: List[SSEEvent] = []
        while "\n" in self.buffer:
            line, self.buffer = self.buffer.split("\n", 1)
            self._feed_line(line, events)
        return events

    def flush(self) -> List[SSEEvent]:
        """刷新缓冲区，返回剩余的事件（流结束时没有尾随空行的情况）"""
        events: List[SSEEvent] = []
        if self.buffer:
            self._feed_line(self.buffer, events)
            self.buffer = ""
        ev = self._dispatch()
        if ev is not None:
            events.append(ev)
        return events


async def iter_sse_events(source: AsyncIterator[Union[str, bytes]]) -> AsyncIterator[SSEEvent]:
    """把字节 / 文本块的异步迭代器转换为 SSEEvent 流（不含空事件）"""
    parser = SSEParser()
    async for chunk in source:
        if not chunk:
            continue
        for ev in parser.feed(chunk):
            yield ev
    for ev in parser.flush():
        yield ev
