"""
Chat Schemas Module

Pydantic models for the OpenAI-compatible chat requests the supervisor
sends to llama-server and the results it hands back to callers.

Schema Categories:
    - Messages: ChatMessage, content parts for multimodal requests
    - Sampling: SamplingParams with llama-server friendly defaults
    - Tools: Tool, ToolFunction, ToolCall for function calling
    - Results: ChatResponse, VisionAnalysis

Usage:
    from llama_supervisor.schemas.chat import ChatMessage, SamplingParams

    messages = [ChatMessage(role="user", content="Hello")]
    params = SamplingParams(temperature=0.2)
"""

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field


# =============================================================================
# Messages
# =============================================================================

class ChatMessage(BaseModel):
    """A single message in a chat conversation."""
    role: Literal["system", "user", "assistant", "tool"] = Field(
        ...,
        description="Role of the message sender"
    )
    content: Optional[Union[str, List[Dict[str, Any]]]] = Field(
        None,
        description="Text, or a list of text/image_url parts"
    )
    tool_calls: Optional[List[Dict[str, Any]]] = Field(
        None,
        description="Tool calls made by the assistant"
    )
    tool_call_id: Optional[str] = Field(
        None,
        description="ID of the tool call this message is responding to"
    )


def text_part(text: str) -> Dict[str, Any]:
    return {"type": "text", "text": text}


def image_part(image_base64: str, mime_type: str = "image/jpeg") -> Dict[str, Any]:
    return {
        "type": "image_url",
        "image_url": {"url": f"data:{mime_type};base64,{image_base64}"}
    }


# =============================================================================
# Sampling
# =============================================================================

class SamplingParams(BaseModel):
    """Sampling parameters for a completion request."""
    temperature: float = Field(0.7, ge=0.0, le=2.0)
    top_p: float = Field(0.9, ge=0.0, le=1.0)
    max_tokens: int = Field(4096, ge=1)


# =============================================================================
# Tools
# =============================================================================

class ToolFunction(BaseModel):
    name: str
    description: str = ""
    parameters: Dict[str, Any] = Field(default_factory=dict)


class Tool(BaseModel):
    """A function the model may call."""
    type: Literal["function"] = "function"
    function: ToolFunction


class ToolCallFunction(BaseModel):
    name: str = ""
    arguments: str = Field("", description="JSON-encoded arguments")


class ToolCall(BaseModel):
    """A tool invocation requested by the model."""
    id: str = ""
    type: str = "function"
    function: ToolCallFunction = Field(default_factory=ToolCallFunction)


# =============================================================================
# Results
# =============================================================================

class ChatResponse(BaseModel):
    """Collected result of a streamed completion."""
    content: str = ""
    tool_calls: List[ToolCall] = Field(default_factory=list)
    finish_reason: Optional[str] = None


class VisionAnalysis(BaseModel):
    """Result of an image analysis request."""
    description: str
    document_type: Optional[str] = Field(
        None,
        description="invoice, contract, letter, form or receipt"
    )
    model: str = ""
