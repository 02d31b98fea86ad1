from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from langchain_core.embeddings import Embeddings

from district_assistant.types import ClassifiedIntent, IntentCategory, UrgencyLevel


@dataclass(slots=True)
class _Reply:
    content: str


class ScriptedLLM:
    """Chat model double: returns queued replies in order, recording prompts.

    A queued exception is raised instead of returned. When the queue is empty
    the `default` reply is used.
    """

    def __init__(self, *replies: Any, default: Any = "") -> None:
        self.replies = list(replies)
        self.default = default
        self.calls: list[list[Any]] = []

    async def ainvoke(self, messages: Any, **kwargs: Any) -> _Reply:
        self.calls.append(list(messages))
        reply = self.replies.pop(0) if self.replies else self.default
        if isinstance(reply, BaseException):
            raise reply
        if isinstance(reply, (dict, list)):
            reply = json.dumps(reply)
        return _Reply(content=reply)

    def prompt(self, index: int = -1) -> str:
        return str(self.calls[index][-1].content)

    def system(self, index: int = -1) -> str:
        return str(self.calls[index][0].content)


class FlakyEmbeddings(Embeddings):
    """Fails the first `failures` batch calls, then returns fixed-size vectors."""

    def __init__(self, dimensions: int, failures: int = 0) -> None:
        self.dimensions = dimensions
        self.failures = failures
        self.batches: list[list[str]] = []

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        self.batches.append(list(texts))
        if self.failures > 0:
            self.failures -= 1
            raise RuntimeError("embedding provider unavailable")
        return [[float(len(text) % 7 + 1)] + [0.5] * (self.dimensions - 1) for text in texts]

    def embed_query(self, text: str) -> list[float]:
        return self.embed_documents([text])[0]


def make_intent(
    category: IntentCategory = IntentCategory.POLICY_QUESTION,
    *,
    confidence: float = 0.9,
    urgency: UrgencyLevel = UrgencyLevel.LOW,
    query: str = "What is the attendance policy?",
    **extra: Any,
) -> ClassifiedIntent:
    return ClassifiedIntent(
        category=category,
        confidence=confidence,
        urgency=urgency,
        original_query=query,
        **extra,
    )


class KeyedLLM:
    """Chat model double shared by several components.

    The first rule whose key appears anywhere in the messages picks the reply,
    so call order between classifier, reranker and generator does not matter.
    """

    def __init__(self, rules: dict[str, Any], default: Any = "") -> None:
        self.rules = rules
        self.default = default
        self.hits: list[str] = []

    async def ainvoke(self, messages: Any, **kwargs: Any) -> _Reply:
        text = "\n".join(str(message.content) for message in messages)
        for key, reply in self.rules.items():
            if key in text:
                self.hits.append(key)
                break
        else:
            self.hits.append("")
            reply = self.default
        if isinstance(reply, BaseException):
            raise reply
        if isinstance(reply, (dict, list)):
            reply = json.dumps(reply)
        return _Reply(content=reply)
