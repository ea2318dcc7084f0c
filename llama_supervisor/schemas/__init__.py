"""
Schemas Package

Pydantic models for the OpenAI-compatible requests sent to llama-server
and the results returned to callers.
"""

from .chat import (
    ChatMessage,
    SamplingParams,
    Tool,
    ToolFunction,
    ToolCall,
    ToolCallFunction,
    ChatResponse,
    VisionAnalysis,
    text_part,
    image_part,
)

__all__ = [
    "ChatMessage",
    "SamplingParams",
    "Tool",
    "ToolFunction",
    "ToolCall",
    "ToolCallFunction",
    "ChatResponse",
    "VisionAnalysis",
    "text_part",
    "image_part",
]
