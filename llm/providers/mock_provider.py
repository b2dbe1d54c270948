"""Deterministic local fallback LLM provider for offline usage."""

from __future__ import annotations

import json
import re
from collections import Counter
from typing import Any

from llm.base_llm import BaseLLM

_MEMORY_CUES = (
    "remember",
    "earlier",
    "before",
    "previous",
    "last time",
    "did i",
    "what did",
    "my name",
    "recall",
    "we discuss",
)
_CONFIRM_WORDS = {"yes", "no", "ok", "okay", "sure", "cancel", "proceed", "confirm", "y", "n"}
_EXPRESSION_RE = re.compile(r"[-+]?[\d.]+(?:\s*[-+*/%]\s*\(?\s*[\d.]+\s*\)?)+")
_URL_RE = re.compile(r"https?://[^\s\"'<>]+")
_CITY_RE = re.compile(r"\bweather\s+(?:in|for|at)\s+([A-Z][\w-]*(?:\s+[A-Z][\w-]*)*)")
_FILE_RE = re.compile(r"(?<![\w/])((?:[\w.-]+/)*[\w-]+\.[A-Za-z0-9]{1,5})\b")
_FACT_PATTERNS = (
    (re.compile(r"\bmy name is ([A-Z][\w-]+)", re.IGNORECASE), "person", "User's name"),
    (re.compile(r"\bi live in ([A-Z][\w-]+)", re.IGNORECASE), "place", "User lives here"),
    (re.compile(r"\bi (?:like|love|prefer) ([\w -]+)", re.IGNORECASE), "preference", "User likes this"),
)
_JSONPLACEHOLDER = "https://jsonplaceholder.typicode.com"


class MockProvider(BaseLLM):
    """Rule-based local responder when external LLM backends are unavailable.

    It recognises the classifier, planner, extraction and compression
    prompts by their system message and answers each in its expected
    format; anything else gets a short templated reply.
    """

    @staticmethod
    def _tokenize(text: str) -> list[str]:
        return [token for token in re.split(r"[^a-zA-Z0-9]+", text.lower()) if token]

    @staticmethod
    def _summarize_tokens(tokens: list[str], max_items: int = 8) -> str:
        if not tokens:
            return "no salient terms detected"
        top = Counter(tokens).most_common(max_items)
        return ", ".join(term for term, _ in top)

    @staticmethod
    def _after(prompt: str, marker: str) -> str:
        index = prompt.rfind(marker)
        return prompt[index + len(marker) :].strip() if index >= 0 else prompt.strip()

    def chat(self, messages: list[dict[str, Any]], **kwargs: Any) -> str:
        """Generate deterministic text from conversational messages."""
        _ = kwargs
        if not messages:
            return "No input received."
        system = " ".join(m["content"] for m in messages if m.get("role") == "system").lower()
        user_messages = [m["content"] for m in messages if m.get("role") == "user"]
        prompt = user_messages[-1] if user_messages else messages[-1]["content"]

        if "intent classifier" in system:
            return json.dumps(self._classify(prompt))
        if "tool-chain planner" in system:
            return json.dumps(self._plan(prompt))
        if "extract durable knowledge" in system:
            return json.dumps(self._extract(prompt))
        if "compress conversation memory" in system:
            return self._compress(prompt)
        return self._respond(prompt)

    def _classify(self, prompt: str) -> dict[str, Any]:
        query = self._after(prompt, "Classify this user query:").strip('"')
        lowered = query.lower()
        tools = re.findall(r"^- (\w+):", prompt, flags=re.MULTILINE)
        wanted: list[str] = []
        if "calculator" in tools and (_EXPRESSION_RE.search(query) or "calculat" in lowered):
            wanted.append("calculator")
        if "api_call" in tools and (
            _URL_RE.search(query) or re.search(r"\b(api|fetch|posts?|comments?|users?)\b", lowered)
        ):
            wanted.append("api_call")
        if "json_reader" in tools and "json" in lowered:
            wanted.append("json_reader")
        if "weather_api" in tools and "weather" in lowered:
            wanted.append("weather_api")
        if "file_reader" in tools and re.search(r"\b(file|directory|folder)\b", lowered):
            wanted.append("file_reader")
        remembers = any(cue in lowered for cue in _MEMORY_CUES)

        if set(self._tokenize(query)) <= _CONFIRM_WORDS and query:
            return self._intent("conversation", 0.4, [], "short reply")
        if wanted and remembers:
            return self._intent("hybrid", 0.7, wanted, "tools plus memory")
        if wanted:
            return self._intent("tool_execution", 0.85, wanted, "tool keywords")
        if remembers:
            return self._intent("memory_chat", 0.8, [], "refers to the past")
        return self._intent("conversation", 0.6, [], "general chat")

    @staticmethod
    def _intent(kind: str, confidence: float, tools: list[str], reasoning: str) -> dict[str, Any]:
        return {"type": kind, "confidence": confidence, "requiredTools": tools, "reasoning": reasoning}

    @staticmethod
    def _step(
        index: int,
        tool: str,
        args: dict[str, Any],
        depends_on: list[str] | None = None,
    ) -> dict[str, Any]:
        return {"id": f"step{index}", "tool": tool, "args": args, "dependsOn": depends_on or []}

    def _plan(self, prompt: str) -> dict[str, Any]:
        request = self._after(prompt, "Request:")
        lowered = request.lower()
        tools = set(re.findall(r'"name":\s*"(\w+)"', prompt))
        steps: list[dict[str, Any]] = []

        if "calculator" in tools:
            match = _EXPRESSION_RE.search(request)
            if match:
                steps.append(
                    self._step(len(steps) + 1, "calculator", {"expression": match.group(0).strip()})
                )

        if "api_call" in tools:
            for url in _URL_RE.findall(request):
                steps.append(
                    self._step(len(steps) + 1, "api_call", {"url": url.rstrip(".,"), "method": "GET"})
                )
            user = re.search(r"posts?\b.*?\buser(?:\s+id)?\s+(\d+|one|two|three)", lowered)
            if not steps and user:
                numbers = {"one": "1", "two": "2", "three": "3"}
                user_id = numbers.get(user.group(1), user.group(1))
                posts_url = f"{_JSONPLACEHOLDER}/posts?userId={user_id}"
                steps.append(self._step(1, "api_call", {"url": posts_url, "method": "GET"}))
                if "comment" in lowered:
                    comments_url = _JSONPLACEHOLDER + "/comments?postId={{step1.data[0].id}}"
                    steps.append(
                        self._step(2, "api_call", {"url": comments_url, "method": "GET"}, ["step1"])
                    )

        if "weather_api" in tools:
            city = _CITY_RE.search(request)
            if city:
                steps.append(self._step(len(steps) + 1, "weather_api", {"city": city.group(1)}))

        if "file_reader" in tools and re.search(r"\b(file|directory|folder)\b", lowered):
            path = _FILE_RE.search(request)
            if path:
                steps.append(self._step(len(steps) + 1, "file_reader", {"path": path.group(1)}))

        if steps:
            return {"steps": steps, "clarification": None}
        return {"steps": [], "clarification": "Which action should I take, and with what inputs?"}

    def _extract(self, prompt: str) -> dict[str, Any]:
        conversation = self._after(prompt, "Conversation:")
        concepts: list[dict[str, Any]] = []
        for pattern, category, description in _FACT_PATTERNS:
            for match in pattern.finditer(conversation):
                concepts.append(
                    {
                        "concept": match.group(1).strip().rstrip("."),
                        "description": description,
                        "category": category,
                        "confidence": 0.8,
                    }
                )
        return {"concepts": concepts, "relationships": []}

    def _compress(self, prompt: str) -> str:
        items = [line.strip() for line in prompt.splitlines()[1:] if line.strip()]
        return "Earlier: " + "; ".join(items)

    def _respond(self, prompt: str) -> str:
        question = self._after(prompt, "User:")
        memory = re.search(r"Relevant memories:\n(.*?)(?:\n\n|\Z)", prompt, flags=re.DOTALL)
        results = re.search(r"Tool results:\n(.*?)(?:\n\n|\Z)", prompt, flags=re.DOTALL)
        parts: list[str] = []
        if results:
            parts.append("Tool results: " + " ".join(results.group(1).split())[:400])
        if memory:
            remembered = [
                line.split(": ", 1)[-1]
                for line in memory.group(1).splitlines()
                if "] user: " in line and line.split(": ", 1)[-1].strip() != question
            ]
            if remembered:
                parts.append("Earlier you mentioned: " + "; ".join(remembered[-3:]))
        if parts:
            return " ".join(parts)
        salient = self._summarize_tokens(self._tokenize(question))
        return f"Local fallback response. Salient terms: {salient}."
