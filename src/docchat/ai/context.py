"""Documentation context blocks and prompt size estimates.

Users pull reference material into a prompt either persistently (include
flags toggled in the UI) or inline with ``@docs.<name>`` tokens. Both paths
render the same tagged blocks, e.g. ``<graphql_sdl>...</graphql_sdl>``.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, replace
from typing import Iterable, List, Sequence

__all__ = [
    "DocsBundle",
    "DocsIncludeFlags",
    "ExpandedMessage",
    "ContextEstimate",
    "DocsContext",
    "estimate_tokens",
    "expand_docs_in_message",
    "parse_docs_tokens",
    "build_docs_block",
    "contains_hidden_docs",
    "compute_context_estimate",
]

_INLINE_TOKEN_RE = re.compile(r"\s*@docs\.(runner|schema|projectOverview|runnerDev)\b")
_ANY_TOKEN_RE = re.compile(r"@docs\.(runnerDev|runner|schema|projectOverview|fullContext|clear)\b")
_HIDDEN_DOCS_RE = re.compile(
    r"<(runner_docs|runner_dev_docs|graphql_sdl|project_overview|project_ai_md)>",
    re.IGNORECASE,
)


@dataclass(slots=True, frozen=True)
class DocsBundle:
    """Reference texts that can be attached to a prompt."""

    runner: str | None = None
    schema: str | None = None
    runner_dev: str | None = None
    project_overview: str | None = None


@dataclass(slots=True, frozen=True)
class DocsIncludeFlags:
    runner: bool = False
    runner_dev: bool = False
    schema: bool = False
    project_overview: bool = False

    def merged(self, other: DocsIncludeFlags) -> DocsIncludeFlags:
        return DocsIncludeFlags(
            runner=self.runner or other.runner,
            runner_dev=self.runner_dev or other.runner_dev,
            schema=self.schema or other.schema,
            project_overview=self.project_overview or other.project_overview,
        )

    @property
    def any(self) -> bool:
        return self.runner or self.runner_dev or self.schema or self.project_overview


@dataclass(slots=True, frozen=True)
class ExpandedMessage:
    model_text: str
    display_text: str


@dataclass(slots=True, frozen=True)
class ContextEstimate:
    """Approximate prompt size in tokens. ``input`` includes attached docs."""

    system: int
    history: int
    input: int
    total: int


def estimate_tokens(text: str | None) -> int:
    return math.ceil(len(text or "") / 4)


def _overview_block(text: str) -> str:
    trimmed = text.strip()
    label = "project_overview" if trimmed.startswith("#") else "project_ai_md"
    return f"<{label}>\n{trimmed}\n</{label}>"


def expand_docs_in_message(raw: str, docs: DocsBundle) -> ExpandedMessage:
    """Replace inline ``@docs`` tokens with the referenced documents.

    The display text is left untouched; the model text has the tokens removed
    and the matching blocks appended. Tokens whose document is unavailable
    are left as typed.
    """

    additions: List[str] = []
    if re.search(r"@docs\.runner\b", raw) and docs.runner:
        additions.append(f"\n\n<runner_docs>\n{docs.runner}\n</runner_docs>")
    if re.search(r"@docs\.schema\b", raw) and docs.schema:
        additions.append(f"\n\n<graphql_sdl>\n{docs.schema}\n</graphql_sdl>")
    if re.search(r"@docs\.runnerDev\b", raw) and docs.runner_dev:
        additions.append(f"\n\n<runner_dev_docs>\n{docs.runner_dev}\n</runner_dev_docs>")
    if re.search(r"@docs\.projectOverview\b", raw) and docs.project_overview:
        additions.append("\n\n" + _overview_block(docs.project_overview))
    if not additions:
        return ExpandedMessage(model_text=raw, display_text=raw)
    cleaned = _INLINE_TOKEN_RE.sub("", raw)
    return ExpandedMessage(model_text=cleaned + "".join(additions), display_text=raw)


def parse_docs_tokens(text: str) -> DocsIncludeFlags:
    """Read include flags from ``@docs`` tokens, in order.

    ``@docs.fullContext`` turns on runner, schema and project overview;
    ``@docs.clear`` resets everything seen before it.
    """

    flags = DocsIncludeFlags()
    for match in _ANY_TOKEN_RE.finditer(text or ""):
        token = match.group(1)
        if token == "clear":
            flags = DocsIncludeFlags()
        elif token == "fullContext":
            flags = replace(flags, runner=True, schema=True, project_overview=True)
        elif token == "runner":
            flags = replace(flags, runner=True)
        elif token == "runnerDev":
            flags = replace(flags, runner_dev=True)
        elif token == "schema":
            flags = replace(flags, schema=True)
        elif token == "projectOverview":
            flags = replace(flags, project_overview=True)
    return flags


def build_docs_block(docs: DocsBundle, include: DocsIncludeFlags) -> str:
    parts: List[str] = []
    if include.runner and docs.runner:
        parts.append(f"<runner_docs>\n{docs.runner}\n</runner_docs>")
    if include.runner_dev and docs.runner_dev:
        parts.append(f"<runner_dev_docs>\n{docs.runner_dev}\n</runner_dev_docs>")
    if include.schema and docs.schema:
        parts.append(f"<graphql_sdl>\n{docs.schema}\n</graphql_sdl>")
    if include.project_overview and docs.project_overview:
        parts.append(_overview_block(docs.project_overview))
    return "\n\n".join(parts)


def contains_hidden_docs(text: str | None) -> bool:
    return bool(_HIDDEN_DOCS_RE.search(text or ""))


def compute_context_estimate(
    system_prompt: str,
    history_texts: Iterable[str],
    input_text: str,
    docs: DocsBundle,
    include: DocsIncludeFlags,
) -> ContextEstimate:
    system = estimate_tokens(system_prompt)
    history = estimate_tokens("\n\n".join(history_texts))
    merged = include.merged(parse_docs_tokens(input_text))
    docs_tokens = estimate_tokens(build_docs_block(docs, merged))
    input_tokens = estimate_tokens(input_text)
    return ContextEstimate(
        system=system,
        history=history,
        input=input_tokens + docs_tokens,
        total=system + history + input_tokens + docs_tokens,
    )


class DocsContext:
    """Supplies the static docs block for each request.

    Instances are callable with the newest user input and return the context
    blocks to send with it, which is the shape the orchestrator expects from a
    context provider.
    """

    def __init__(self, docs: DocsBundle | None = None, include: DocsIncludeFlags | None = None) -> None:
        self.docs = docs or DocsBundle()
        self.include = include or DocsIncludeFlags()

    def update(self, **flags: bool) -> DocsIncludeFlags:
        self.include = replace(self.include, **flags)
        return self.include

    def clear(self) -> None:
        self.include = DocsIncludeFlags()

    def __call__(self, input_text: str) -> Sequence[str]:
        if contains_hidden_docs(input_text):
            return ()
        block = build_docs_block(self.docs, self.include)
        return (block,) if block else ()
