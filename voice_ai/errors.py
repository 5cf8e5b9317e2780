from __future__ import annotations

from typing import Optional


class VoiceAIError(Exception):
    """Base class for all errors raised or emitted by voice_ai providers."""


class ValidationError(VoiceAIError, ValueError):
    """Bad caller input (e.g. empty text). Raised before any I/O."""


class ConfigurationError(VoiceAIError, ValueError):
    """Bad adapter construction options. Raised from the constructor."""


class UpstreamError(VoiceAIError, RuntimeError):
    """Vendor returned a non-success status or reported an explicit failure."""

    def __init__(self, provider: str, message: str, *, status_code: Optional[int] = None,
                 detail: Optional[str] = None) -> None:
        self.provider = provider
        self.status_code = status_code
        self.detail = detail
        text = f"{provider}: {message}"
        if status_code is not None:
            text += f" (status={status_code})"
        if detail:
            text += f": {detail}"
        super().__init__(text)


class SynthesisTimeoutError(VoiceAIError, TimeoutError):
    """A polled synthesis job did not reach a terminal status within the attempt bound."""


class TransportError(VoiceAIError, ConnectionError):
    """Connection dropped or a read failed mid-stream."""
