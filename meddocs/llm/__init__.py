"""
LLM Package

Structured extraction of medical text through an OpenAI-compatible chat
model:

    from meddocs.llm import build_structured_extractor

    extractor = build_structured_extractor()
    data = await extractor.extract_structured(text, DocType.BLOOD_TEST, "en")
"""

from meddocs.llm.prompts import DEFAULT_PROMPTS, PromptStore
from meddocs.llm.retry import RetryPolicy, is_rate_limit_error
from meddocs.llm.structured import StructuredDataExtractor, build_structured_extractor

__all__ = [
    "DEFAULT_PROMPTS",
    "PromptStore",
    "RetryPolicy",
    "is_rate_limit_error",
    "StructuredDataExtractor",
    "build_structured_extractor",
]
