"""
Tagged results for structured model replies.

Raw completion text is validated exactly once, here. Proposer replies become
:class:`TextsReply`, grader replies become :class:`AnswerReply`; anything else
becomes :class:`EmptyResponse` or :class:`ParseError`.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union

from .errors import ReplyError

TEXTS_SCHEMA: Dict[str, Any] = {
    "name": "candidate_instructions",
    "strict": True,
    "schema": {
        "type": "object",
        "properties": {
            "total_texts": {"type": "string"},
            "texts": {"type": "array", "items": {"type": "string"}},
        },
        "required": ["total_texts", "texts"],
        "additionalProperties": False,
    },
}

ANSWER_SCHEMA: Dict[str, Any] = {
    "name": "graded_answer",
    "strict": True,
    "schema": {
        "type": "object",
        "properties": {
            "solve": {"type": "string"},
            "answer": {"type": "number"},
        },
        "required": ["solve", "answer"],
        "additionalProperties": False,
    },
}


@dataclass(frozen=True)
class TextsReply:
    texts: Tuple[str, ...]


@dataclass(frozen=True)
class AnswerReply:
    answer: float


@dataclass(frozen=True)
class EmptyResponse:
    pass


@dataclass(frozen=True)
class ParseError:
    reason: str
    raw: str = ""


ProposerReply = Union[TextsReply, EmptyResponse, ParseError]
GraderReply = Union[AnswerReply, EmptyResponse, ParseError]


def _load_object(raw: Optional[str]) -> Union[Dict[str, Any], EmptyResponse, ParseError]:
    if raw is None or not raw.strip():
        return EmptyResponse()
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        return ParseError(f"invalid JSON: {exc}", raw)
    if not isinstance(data, dict):
        return ParseError("reply is not a JSON object", raw)
    return data


def parse_texts_reply(raw: Optional[str]) -> ProposerReply:
    data = _load_object(raw)
    if not isinstance(data, dict):
        return data
    texts = data.get("texts")
    if not isinstance(texts, list) or not texts:
        return ParseError("texts array is empty or missing", raw or "")
    if not all(isinstance(t, str) for t in texts):
        return ParseError("texts array holds non-string items", raw or "")
    return TextsReply(tuple(texts))


def parse_answer_reply(raw: Optional[str]) -> GraderReply:
    data = _load_object(raw)
    if not isinstance(data, dict):
        return data
    answer = data.get("answer")
    # bool is an int subclass but never a valid answer
    if isinstance(answer, bool) or not isinstance(answer, (int, float)):
        return ParseError("answer is missing or not a number", raw or "")
    if math.isnan(answer) or math.isinf(answer):
        return ParseError("answer is not finite", raw or "")
    return AnswerReply(float(answer))


def expect_texts(raw: Optional[str]) -> List[str]:
    """Return the candidate texts or raise :class:`ReplyError`."""
    reply = parse_texts_reply(raw)
    if isinstance(reply, TextsReply):
        return list(reply.texts)
    raise ReplyError(describe(reply))


def expect_answer(raw: Optional[str]) -> float:
    """Return the numeric answer or raise :class:`ReplyError`."""
    reply = parse_answer_reply(raw)
    if isinstance(reply, AnswerReply):
        return reply.answer
    raise ReplyError(describe(reply))


def describe(reply: Union[ProposerReply, GraderReply]) -> str:
    if isinstance(reply, EmptyResponse):
        return "Empty response from LLM"
    if isinstance(reply, ParseError):
        return f"Invalid response format: {reply.reason}"
    return "ok"
