"""AI layer: the vision model client, retries, prompts and response parsing.

client.py is the only module that imports google-generativeai.

Exports:
    - GeminiVisionClient / VisionModel: the model endpoint
    - ModelQueryExecutor: model calls with retry/backoff
    - ResponseParser: tolerant JSON parsing with a fallback extractor
    - render_atlas_prompt / render_single_image_prompt: prompt builders
    - UsageTracker: in-memory token and cost accounting
"""

from gridsight.ai.client import GeminiVisionClient, ImagePayload, ModelResponse, VisionModel
from gridsight.ai.executor import ModelQueryExecutor
from gridsight.ai.parser import ParsedResponse, ResponseParser
from gridsight.ai.prompts import render_atlas_prompt, render_single_image_prompt
from gridsight.ai.retry import RetryPolicy, with_retry
from gridsight.ai.usage_tracker import UsageTracker

__all__ = [
    "GeminiVisionClient",
    "ImagePayload",
    "ModelQueryExecutor",
    "ModelResponse",
    "ParsedResponse",
    "ResponseParser",
    "RetryPolicy",
    "UsageTracker",
    "VisionModel",
    "render_atlas_prompt",
    "render_single_image_prompt",
    "with_retry",
]
