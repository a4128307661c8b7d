"""
Thinking/answer segmentation of model output.

segment_output() is called with the whole accumulated completion text every
time a chunk arrives, so it must be cheap, pure and idempotent. There is no
state between calls: each call re-reads the text from scratch.

Two modes:
  structured  the text carries <think>/<answer> markers; take what is
              inside them (or after an opening marker that is not yet closed)
  heuristic   no markers; decide by length and indicator phrases
"""

from __future__ import annotations

from dataclasses import dataclass

THINK_OPEN, THINK_CLOSE = "<think>", "</think>"
ANSWER_OPEN, ANSWER_CLOSE = "<answer>", "</answer>"


@dataclass(frozen=True)
class HeuristicRules:
    """
    Tuning for untagged output.

    thinking_floor:     trimmed text shorter than this is always thinking
    undecided_ceiling:  indicator-free text shorter than this is still thinking
    thinking_phrases:   lowercase phrases that mark reasoning
    answer_phrases:     lowercase phrases that mark a final answer (these win)
    """
    thinking_floor: int = 20
    undecided_ceiling: int = 30
    thinking_phrases: tuple[str, ...] = (
        "let me think",
        "i need to",
        "let me consider",
        "i should",
        "first,",
        "step 1",
        "step by step",
        "let me work",
        "thinking about",
        "analyzing",
        "considering",
    )
    answer_phrases: tuple[str, ...] = (
        "final answer",
        "equals",
        "is equal to",
        "the result is",
        "therefore",
        "in conclusion",
        "finally",
        "=",
        "is:",
        "answer:",
    )


DEFAULT_RULES = HeuristicRules()


@dataclass(frozen=True)
class Segments:
    thinking: str = ""
    answer: str = ""
    structured: bool = False


def _strip_partial_close(content: str, close: str) -> str:
    """Drop a trailing '</thi'-style fragment: the closing marker is mid-arrival."""
    for k in range(len(close) - 1, 1, -1):
        if content.endswith(close[:k]):
            return content[:-k]
    return content


def _extract(text: str, open_tag: str, close_tag: str) -> str:
    start = text.find(open_tag)
    if start == -1:
        return ""
    start += len(open_tag)
    end = text.find(close_tag, start)
    if end == -1:
        return _strip_partial_close(text[start:], close_tag).strip()
    return text[start:end].strip()


def has_tags(text: str) -> bool:
    return THINK_OPEN in text or ANSWER_OPEN in text


def segment_output(text: str, rules: HeuristicRules = DEFAULT_RULES) -> Segments:
    """Split accumulated output into thinking and answer."""
    if has_tags(text):
        return Segments(
            thinking=_extract(text, THINK_OPEN, THINK_CLOSE),
            answer=_extract(text, ANSWER_OPEN, ANSWER_CLOSE),
            structured=True,
        )

    trimmed = text.strip()
    if len(trimmed) < rules.thinking_floor:
        return Segments(thinking=trimmed)

    lowered = trimmed.lower()
    if any(p in lowered for p in rules.answer_phrases):
        return Segments(answer=trimmed)
    if any(p in lowered for p in rules.thinking_phrases):
        return Segments(thinking=trimmed)
    if len(trimmed) < rules.undecided_ceiling:
        return Segments(thinking=trimmed)
    return Segments(answer=trimmed)


def finalize_segments(text: str, rules: HeuristicRules = DEFAULT_RULES) -> Segments:
    """
    Segmentation of a finished completion.

    The in-progress guards no longer apply once the stream is over:
    untagged output with an empty answer becomes the answer, and tagged
    output without an <answer> marker uses whatever follows </think>.
    """
    segments = segment_output(text, rules)
    if segments.answer:
        return segments
    if not segments.structured:
        return Segments(answer=text.strip())
    if ANSWER_OPEN not in text and THINK_CLOSE in text:
        tail = text[text.rfind(THINK_CLOSE) + len(THINK_CLOSE):].strip()
        return Segments(thinking=segments.thinking, answer=tail, structured=True)
    return segments
