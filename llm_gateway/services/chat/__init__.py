from .parsed_event import ParsedStreamEvent
from .stream_decoder import StreamDecoder

__all__ = ['ParsedStreamEvent', 'StreamDecoder']
