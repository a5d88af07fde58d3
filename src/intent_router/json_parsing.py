"""
Defensive JSON extraction for model output.

Each strategy is a pure function ``str -> ParseOutcome``. ``parse_with_strategies``
tries them in order and commits to the first one whose payload also passes the
caller's schema check, so a strategy that parses but yields the wrong shape
does not stop the chain.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence, Tuple, TypeVar

from loguru import logger

T = TypeVar("T")


class JSONParseError(Exception):
    """Raised when a single parse strategy cannot produce a JSON object."""
    pass


@dataclass(frozen=True)
class ParseOutcome:
    """Result of one parse attempt: a value or an error, never both."""
    value: Any = None
    error: Optional[str] = None
    strategy: str = ""

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: Any, strategy: str) -> "ParseOutcome":
        return cls(value=value, strategy=strategy)

    @classmethod
    def failure(cls, error: str, strategy: str) -> "ParseOutcome":
        return cls(error=error, strategy=strategy)


def _load_object(text: str) -> Any:
    value = json.loads(text)
    if not isinstance(value, dict):
        raise JSONParseError(f"Expected a JSON object, got {type(value).__name__}")
    return value


def _attempt(name: str, func: Callable[[str], Any], text: str) -> ParseOutcome:
    try:
        return ParseOutcome.success(func(text), name)
    except (JSONParseError, ValueError) as e:
        # json.JSONDecodeError is a ValueError
        return ParseOutcome.failure(str(e), name)


def parse_direct(text: str) -> ParseOutcome:
    """Parse the whole response as JSON."""
    return _attempt("direct", lambda s: _load_object(s.strip()), text)


_FENCE = re.compile(r"```(?:json|JSON)?\s*(.*?)```", re.DOTALL)


def parse_fenced_block(text: str) -> ParseOutcome:
    """Parse the first Markdown code fence."""
    def extract(s: str) -> Any:
        match = _FENCE.search(s)
        if not match:
            raise JSONParseError("No fenced code block found")
        return _load_object(match.group(1).strip())

    return _attempt("fenced_block", extract, text)


def extract_balanced_object(text: str) -> str:
    """Return the first brace-balanced ``{...}`` substring, honoring string literals."""
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for index in range(start, len(text)):
            char = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    return text[start:index + 1]
        start = text.find("{", start + 1)
    raise JSONParseError("No balanced JSON object found")


def parse_balanced_object(text: str) -> ParseOutcome:
    """Parse the first brace-balanced object embedded in prose."""
    return _attempt("balanced_object", lambda s: _load_object(extract_balanced_object(s)), text)


_SMART_QUOTES = str.maketrans({"“": '"', "”": '"', "‘": "'", "’": "'"})


def clean_json_punctuation(text: str) -> str:
    """Repair common near-JSON: smart quotes, comments, trailing commas,
    single quotes and Python literals."""
    s = text.translate(_SMART_QUOTES)
    s = re.sub(r"^\s*```(?:json)?\s*", "", s, flags=re.I)
    s = re.sub(r"\s*```\s*$", "", s)
    start, end = s.find("{"), s.rfind("}")
    if start != -1 and end > start:
        s = s[start:end + 1]

    # Remove JS comments and trailing commas
    s = re.sub(r"//[^\n]*$|/\*.*?\*/", "", s, flags=re.S | re.M)
    s = re.sub(r",\s*(?=[}\]])", "", s)

    # Single-quoted keys and values
    s = re.sub(r"'\s*([^']+?)\s*'\s*:", r'"\1":', s)
    s = re.sub(
        r":\s*'([^']*?)'(?=\s*[,}\]])",
        lambda m: ':"' + m.group(1).replace('"', '\\"') + '"',
        s
    )

    # Python literals outside strings are close enough here
    s = re.sub(r"(?<=[:\[,\s])True\b", "true", s)
    s = re.sub(r"(?<=[:\[,\s])False\b", "false", s)
    s = re.sub(r"(?<=[:\[,\s])None\b", "null", s)
    return s


def parse_cleaned(text: str) -> ParseOutcome:
    """Parse after punctuation cleanup."""
    return _attempt("punctuation_cleanup", lambda s: _load_object(clean_json_punctuation(s)), text)


DEFAULT_STRATEGIES: Tuple[Callable[[str], ParseOutcome], ...] = (
    parse_direct,
    parse_fenced_block,
    parse_balanced_object,
    parse_cleaned,
)


def parse_with_strategies(
    text: str,
    validate: Callable[[Any], T],
    strategies: Sequence[Callable[[str], ParseOutcome]] = DEFAULT_STRATEGIES
) -> ParseOutcome:
    """Run strategies in order and return the first schema-valid outcome.

    Args:
        text: Raw model output
        validate: Converts a parsed payload into the caller's type, raising
            ValueError (pydantic ValidationError included) when it does not fit
        strategies: Ordered parse attempts

    Returns:
        ParseOutcome whose value is the validated object, or a failure
        carrying the last error seen
    """
    if not text or not text.strip():
        return ParseOutcome.failure("Empty response", "none")

    last_error = "No strategy attempted"
    for strategy in strategies:
        outcome = strategy(text)
        if not outcome.ok:
            last_error = outcome.error
            continue
        try:
            validated = validate(outcome.value)
        except ValueError as e:
            last_error = f"{outcome.strategy}: {e}"
            continue
        return ParseOutcome.success(validated, outcome.strategy)

    logger.debug("All parse strategies failed", error=last_error, preview=text[:120])
    return ParseOutcome.failure(last_error, "none")
