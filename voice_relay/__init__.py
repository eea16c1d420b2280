"""Real-time voice conversation relay: speech-to-text, LLM and text-to-speech over one websocket."""

__version__ = "1.0.0"
