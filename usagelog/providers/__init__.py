"""Host-side language models speaking the ``do_generate``/``do_stream`` contract."""

from usagelog.providers.fake import FakeLanguageModel, text_stream_chunks
from usagelog.providers.openai import OpenAIChatLanguageModel, OpenAIProviderError

__all__ = [
    "FakeLanguageModel",
    "text_stream_chunks",
    "OpenAIChatLanguageModel",
    "OpenAIProviderError",
]
