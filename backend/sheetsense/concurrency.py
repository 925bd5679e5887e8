import asyncio

from .config.settings import settings

# Limits concurrent vision/LLM API calls across detection and correction,
# preventing rate limit bursts from batch uploads
llm_semaphore = asyncio.Semaphore(settings.MAX_CONCURRENT_LLM_CALLS)

# Limits concurrent CPU-bound image normalization so the event loop stays responsive
image_semaphore = asyncio.Semaphore(2)
