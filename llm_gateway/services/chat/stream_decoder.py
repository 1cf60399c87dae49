"""
Инкрементальный декодер стрима провайдера.

Bytes arrive in arbitrary chunks; the decoder reassembles UTF-8 characters
and lines across chunk boundaries, parses each complete line once and hands
the record to a provider specific ``extract`` function.
"""
import codecs
import json
from typing import Callable, List, Optional, Any

from .parsed_event import ParsedStreamEvent
from ...core.exceptions import DecodeError
from ...core.logging import logger
from ...models import StreamDelta

# Служебные поля SSE, которые не несут данных
SSE_CONTROL_FIELDS = ("event:", "id:", "retry:")

Extractor = Callable[[Any], Optional[StreamDelta]]


class StreamDecoder:
    """
    Turns a byte stream into an ordered list of StreamDelta values.

    Args:
        extract: maps one parsed JSON record to a delta, or None for records
            that carry no content (usage, finish markers, metadata)
        sentinel: payload that marks the end of the provider stream, e.g. "[DONE]"
        prefix: SSE data field prefix stripped before parsing
    """

    def __init__(self, extract: Extractor, sentinel: Optional[str] = None, prefix: str = "data:"):
        self.extract = extract
        self.sentinel = sentinel
        self.prefix = prefix
        self.utf8_decoder = codecs.getincrementaldecoder('utf-8')(errors='replace')
        self.buffer = ""
        self.errors: List[DecodeError] = []
        self.done = False

    def feed(self, chunk: bytes) -> List[StreamDelta]:
        """
        Обрабатывает очередной чанк и возвращает дельты всех завершенных строк

        Неполная последняя строка остается в буфере до следующего чанка.
        """
        decoded = self.utf8_decoder.decode(chunk, final=False)
        if not decoded:
            return []

        self.buffer += decoded
        if "\n" not in self.buffer:
            return []

        *lines, self.buffer = self.buffer.split("\n")
        return self._process_lines(lines)

    def finish(self) -> List[StreamDelta]:
        """End of stream: flush the decoder and process a trailing unterminated line."""
        tail = self.buffer + self.utf8_decoder.decode(b"", final=True)
        self.buffer = ""
        if not tail:
            return []
        return self._process_lines(tail.split("\n"))

    def _process_lines(self, lines: List[str]) -> List[StreamDelta]:
        deltas = []
        for line in lines:
            event = self.parse_line(line)
            if event is None or not event.has_data:
                continue
            try:
                delta = self.extract(event.data)
            except (AttributeError, KeyError, IndexError, TypeError, ValueError) as e:
                # Запись неожиданной формы пропускается, как и битый JSON
                self._record_error(event.raw.strip(), e)
                continue
            if delta is not None:
                deltas.append(delta)
        return deltas

    def parse_line(self, line: str) -> Optional[ParsedStreamEvent]:
        """
        Парсит одну строку. Возвращает None для пустых строк, комментариев
        и служебных полей SSE.
        """
        stripped = line.strip()
        if not stripped or stripped.startswith(":"):
            return None
        if stripped.startswith(SSE_CONTROL_FIELDS):
            return None

        stream_format = "ndjson"
        payload = stripped
        if self.prefix and stripped.startswith(self.prefix):
            stream_format = "sse"
            payload = stripped[len(self.prefix):].strip()
            if not payload:
                return None

        if self.sentinel is not None and payload == self.sentinel:
            self.done = True
            return ParsedStreamEvent(raw=line, format=stream_format, is_done=True)

        try:
            data = json.loads(payload)
        except json.JSONDecodeError as e:
            self._record_error(payload, e)
            return ParsedStreamEvent(
                raw=line,
                format=stream_format,
                is_valid=False,
                error=f"JSON parse error: {e}"
            )

        return ParsedStreamEvent(raw=line, format=stream_format, data=data)

    def _record_error(self, payload: str, error: Exception) -> None:
        decode_error = DecodeError(
            message=f"Malformed stream line skipped: {error}",
            original_exception=error
        )
        self.errors.append(decode_error)
        logger.warning("Skipping malformed stream line", extra={
            "stream": {
                "error": str(error),
                "line_preview": payload[:200],
                "errors_so_far": len(self.errors)
            }
        })
