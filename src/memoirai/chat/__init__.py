"""Chat session state and debounced editor callbacks."""

from memoirai.chat.debounce import Debouncer
from memoirai.chat.session import ChatSession

__all__ = ["ChatSession", "Debouncer"]
