import json
import re

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL | re.IGNORECASE)


def _first_balanced_object(text: str) -> str | None:
    start = text.find("{")
    if start == -1:
        return None
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        c = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif c == "\\":
                escaped = True
            elif c == '"':
                in_string = False
            continue
        if c == '"':
            in_string = True
        elif c == "{":
            depth += 1
        elif c == "}":
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
    return None


def _sanitize(snippet: str) -> str:
    # Trailing commas are the most common model mistake.
    return re.sub(r",\s*([}\]])", r"\1", snippet.strip())


def parse_llm_json(text: str) -> dict:
    """Best-effort extraction of one JSON object from model output; {} when there is none."""
    if not text:
        return {}
    candidate = text.strip()
    try:
        data = json.loads(candidate)
        return data if isinstance(data, dict) else {}
    except ValueError:
        pass

    snippets: list[str] = []
    fenced = _FENCED_JSON.search(candidate)
    if fenced:
        snippets.append(fenced.group(1))
    balanced = _first_balanced_object(candidate)
    if balanced:
        snippets.append(balanced)
    # Greedy outermost braces, as a last resort for prose-wrapped envelopes.
    greedy = re.search(r"\{.*\}", candidate, re.DOTALL)
    if greedy:
        snippets.append(greedy.group(0))

    for snippet in snippets:
        for attempt in (snippet, _sanitize(snippet)):
            try:
                data = json.loads(attempt)
            except ValueError:
                continue
            if isinstance(data, dict):
                return data
    return {}
