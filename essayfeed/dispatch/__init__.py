"""
Dispatch Module.

Provider adapters, the LLM client and streamed/pooled execution.
"""

from essayfeed.dispatch.cancellation import CancellationToken, OperationCancelled
from essayfeed.dispatch.dispatcher import Dispatcher, PooledResult, reassemble
from essayfeed.dispatch.llm_client import DispatchError, LLMClient
from essayfeed.dispatch.providers import CompletionRequest, ProviderProfile, get_provider_profile

__all__ = [
    "CancellationToken",
    "CompletionRequest",
    "DispatchError",
    "Dispatcher",
    "LLMClient",
    "OperationCancelled",
    "PooledResult",
    "ProviderProfile",
    "get_provider_profile",
    "reassemble",
]
