from .channel import Channel, QueueChannel, WebSocketChannel
from .session_relay import SessionRelay, RelayEntry

__all__ = ['Channel', 'QueueChannel', 'WebSocketChannel', 'SessionRelay', 'RelayEntry']
