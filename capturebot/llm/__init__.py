"""Completion service access."""

from .provider import (
    CompletionError,
    CompletionProvider,
    CompletionResult,
    NoLLMProvider,
    OpenAICompletionProvider,
    get_completion_provider,
    parse_json_response,
)

__all__ = [
    'CompletionError',
    'CompletionProvider',
    'CompletionResult',
    'NoLLMProvider',
    'OpenAICompletionProvider',
    'get_completion_provider',
    'parse_json_response',
]
