"""
Filename and text classifiers.

Role detection for model files and document-type detection for vision
results are plain substring rule tables. Callers can pass their own table
to the classifiers instead of editing process-management code.

Rule tables are ordered: the first rule whose keywords match wins.

Usage:
    classifier = ModelFileClassifier()
    classifier.classify("llava-v1.6-mistral-7b.Q4_K_M.gguf")   # "vision"

    DocumentClassifier().classify("INVOICE #2024-113 ...")      # "invoice"
"""

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple


@dataclass(frozen=True)
class Rule:
    label: str
    keywords: Tuple[str, ...]

    def matches(self, text: str) -> bool:
        return any(keyword in text for keyword in self.keywords)


# Labels returned by ModelFileClassifier
PROJECTOR = "mmproj"
VISION = "vision"
CODER = "coder"
CHAT = "chat"

DEFAULT_MODEL_RULES: Tuple[Rule, ...] = (
    Rule(PROJECTOR, ("mmproj",)),
    Rule(VISION, ("llava", "vision", "minicpm")),
    Rule(CODER, ("coder", "deepseek-coder")),
)

# Chat candidates containing one of these are preferred over other files
DEFAULT_PREFERRED_CHAT_FAMILIES: Tuple[str, ...] = ("qwen", "llama", "mistral", "gemma")

# Model names that need a multimodal projector next to them
VISION_MODEL_KEYWORDS: Tuple[str, ...] = ("llava", "vision", "minicpm")

DEFAULT_DOCUMENT_RULES: Tuple[Rule, ...] = (
    Rule("invoice", ("invoice", "rechnung")),
    Rule("contract", ("contract", "vertrag")),
    Rule("letter", ("letter", "brief")),
    Rule("form", ("form", "formular")),
    Rule("receipt", ("receipt", "quittung")),
)


class ModelFileClassifier:
    """Classifies .gguf file names into mmproj/vision/coder/chat."""

    def __init__(
        self,
        rules: Sequence[Rule] = DEFAULT_MODEL_RULES,
        preferred_chat_families: Sequence[str] = DEFAULT_PREFERRED_CHAT_FAMILIES
    ):
        self.rules = tuple(rules)
        self.preferred_chat_families = tuple(preferred_chat_families)

    def classify(self, filename: str) -> str:
        name = filename.lower()
        for rule in self.rules:
            if rule.matches(name):
                return rule.label
        return CHAT

    def is_preferred_chat(self, filename: str) -> bool:
        name = filename.lower()
        return any(family in name for family in self.preferred_chat_families)


class DocumentClassifier:
    """Guesses a document type from model output text."""

    def __init__(self, rules: Sequence[Rule] = DEFAULT_DOCUMENT_RULES):
        self.rules = tuple(rules)

    def classify(self, text: str) -> Optional[str]:
        lowered = text.lower()
        for rule in self.rules:
            if rule.matches(lowered):
                return rule.label
        return None


def is_vision_model_name(filename: str) -> bool:
    name = filename.lower()
    return any(keyword in name for keyword in VISION_MODEL_KEYWORDS)
