"""Test doubles for time and the OpenAI client"""

import asyncio
import hashlib
import re
from types import SimpleNamespace
from typing import Any, Dict, List, Optional


class ManualClock:
    """Clock that only moves when told to"""

    def __init__(self, start: float = 1_700_000_000.0):
        self.current = start

    def now(self) -> float:
        return self.current

    def advance(self, seconds: float):
        self.current += seconds


async def instant_sleep(seconds: float):
    return None


def embed_text(text: str, dimension: int = 8) -> List[float]:
    """Deterministic bag-of-words vector; texts sharing words point the same way"""
    vector = [0.0] * dimension
    for word in re.findall(r"[a-z0-9]+", text.lower()):
        index = int(hashlib.sha256(word.encode()).hexdigest(), 16) % dimension
        vector[index] += 1.0
    if not any(vector):
        vector[0] = 1.0
    return vector


class FakeEmbeddings:
    """Stands in for ``AsyncOpenAI().embeddings``"""

    def __init__(self, dimension: int = 8):
        self.dimension = dimension
        self.calls: List[str] = []
        self.errors: List[Exception] = []  # raised in order, one per call
        self.fail_with: Optional[Exception] = None  # raised on every call
        self.vectors: Dict[str, List[float]] = {}
        self.delay = 0.0

    async def create(self, model: str, input: str):
        self.calls.append(input)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        if self.errors:
            raise self.errors.pop(0)

        vector = self.vectors.get(input) or embed_text(input, self.dimension)
        return SimpleNamespace(
            data=[SimpleNamespace(embedding=vector)],
            usage=SimpleNamespace(total_tokens=len(input.split())),
        )


class FakeStream:
    """Provider stream of text deltas followed by a usage-only event"""

    def __init__(
        self,
        chunks: List[str],
        error: Optional[Exception] = None,
        delay: float = 0.0,
        prompt_tokens: int = 40,
        completion_tokens: int = 10,
    ):
        self.chunks = chunks
        self.error = error
        self.delay = delay
        self.prompt_tokens = prompt_tokens
        self.completion_tokens = completion_tokens
        self.yielded = 0
        self.closed = False

    def __aiter__(self):
        return self._events()

    async def _events(self):
        for text in self.chunks:
            if self.delay:
                await asyncio.sleep(self.delay)
            self.yielded += 1
            yield SimpleNamespace(
                choices=[SimpleNamespace(delta=SimpleNamespace(content=text), finish_reason=None)],
                usage=None,
            )

        if self.error is not None:
            raise self.error

        yield SimpleNamespace(
            choices=[],
            usage=SimpleNamespace(
                prompt_tokens=self.prompt_tokens,
                completion_tokens=self.completion_tokens,
                total_tokens=self.prompt_tokens + self.completion_tokens,
            ),
        )

    async def close(self):
        self.closed = True


class FakeChatCompletions:
    """Stands in for ``AsyncOpenAI().chat.completions``.

    Each call consumes the next scripted entry: a string answer, an
    exception to raise, or a FakeStream. With nothing scripted it answers
    ``default_text``.
    """

    def __init__(self, default_text: str = "We are open from 11am to 10pm every day."):
        self.default_text = default_text
        self.responses: List[Any] = []
        self.calls: List[Dict[str, Any]] = []
        self.streams: List[FakeStream] = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        scripted = self.responses.pop(0) if self.responses else None
        if isinstance(scripted, Exception):
            raise scripted

        if kwargs.get("stream"):
            stream = scripted if isinstance(scripted, FakeStream) else FakeStream(
                _split_words(scripted if isinstance(scripted, str) else self.default_text)
            )
            self.streams.append(stream)
            return stream

        text = scripted if isinstance(scripted, str) else self.default_text
        return SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content=text), finish_reason="stop")],
            usage=SimpleNamespace(prompt_tokens=100, completion_tokens=50, total_tokens=150),
        )


class FakeOpenAI:
    """Just enough of ``openai.AsyncOpenAI`` for the engine"""

    def __init__(self, dimension: int = 8):
        self.embeddings = FakeEmbeddings(dimension)
        self.completions = FakeChatCompletions()
        self.chat = SimpleNamespace(completions=self.completions)


def _split_words(text: str) -> List[str]:
    words = text.split(" ")
    return [word + " " for word in words[:-1]] + words[-1:]
