"""DeepSeek web chat exposed through the OpenAI chat-completions protocol."""

__version__ = "1.0.0"
