"""External AI services used by DocGraph."""

from .llm_client import LLMClient, LLMError, get_llm_client, is_llm_configured

__all__ = ['LLMClient', 'LLMError', 'get_llm_client', 'is_llm_configured']
