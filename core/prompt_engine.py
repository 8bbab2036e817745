"""Tier-specific sub-request construction and the static fallback template.

Updates:
    v0.1 - 2025-11-06 - Added prompt composition with context sections.
    v0.2 - 2025-11-07 - Split prompt construction per strategy tier.
    v0.3 - 2025-11-08 - Added deterministic static template renderer for the last-resort tier.
"""

from __future__ import annotations

import logging
from textwrap import dedent
from typing import Dict, List, Mapping, Optional, Sequence

from config.settings import AppConfig, TierConfig
from models.generation import GenerationRequest, StrategyTier, SubRequest

LOGGER = logging.getLogger("agc.prompt")

_SYSTEM_MESSAGES: Dict[StrategyTier, str] = {
    StrategyTier.FULL_ENHANCEMENT: (
        "You are the primary content generator. Produce a rich, well-structured, "
        "complete response that uses every piece of supplied context."
    ),
    StrategyTier.BASELINE: (
        "You are a reliable content generator. Produce a clear, complete response "
        "grounded in the essential context."
    ),
    StrategyTier.MINIMAL: (
        "Respond briefly and directly. Keep only what the task strictly requires."
    ),
    StrategyTier.STATIC_TEMPLATE: "",
}

_RESERVED_CONTEXT_KEYS = {"required_terms", "min_words", "title", "essentials"}


def _as_terms(value: object) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, (list, tuple, set, frozenset)):
        return [str(item) for item in value if str(item).strip()]
    return [str(value)]


def required_terms(context: Mapping[str, object]) -> List[str]:
    """Return the terms the artifact is expected to mention."""
    return _as_terms(context.get("required_terms"))


def _format_context(context: Mapping[str, object], keys: Optional[Sequence[str]] = None) -> str:
    selected = keys if keys is not None else sorted(
        key for key in context if key not in _RESERVED_CONTEXT_KEYS
    )
    lines = [f"- {key}: {context[key]}" for key in selected if key in context]
    return "\n".join(lines)


def build_sub_request(
    tier: StrategyTier,
    request: GenerationRequest,
    tier_config: Optional[TierConfig] = None,
) -> SubRequest:
    """Build the backend payload for *tier*; pure function of its inputs."""
    context = request.context
    terms = required_terms(context)
    sections: List[str] = []

    if tier is StrategyTier.FULL_ENHANCEMENT:
        details = _format_context(context)
        if details:
            sections.append("### Context\n" + details)
        sections.append("### Task\n" + request.prompt.strip())
        if terms:
            sections.append("### Must Mention\n" + ", ".join(terms))
        sections.append(
            dedent(
                """
                ### Guidance
                Expand on the task with concrete detail, vivid structure, and a clear ending.
                """
            ).strip()
        )
    elif tier is StrategyTier.BASELINE:
        essentials = _as_terms(context.get("essentials"))
        details = _format_context(context, essentials or None)
        if details:
            sections.append("### Context\n" + details)
        sections.append("### Task\n" + request.prompt.strip())
        if terms:
            sections.append("### Must Mention\n" + ", ".join(terms))
    elif tier is StrategyTier.MINIMAL:
        sections.append(request.prompt.strip())
        if terms:
            sections.append("Mention: " + ", ".join(terms))
    else:
        sections.append(render_static_template(request))

    return SubRequest(
        tier=tier,
        system=_SYSTEM_MESSAGES[tier],
        prompt="\n\n".join(sections),
        temperature=tier_config.temperature if tier_config else None,
        max_tokens=tier_config.max_tokens if tier_config else None,
        context=context,
    )


def render_static_template(request: GenerationRequest) -> str:
    """Render the deterministic last-resort artifact from the request alone."""
    context = request.context
    title = str(context.get("title") or "").strip() or _title_from_prompt(request.prompt)
    terms = required_terms(context)
    lines = [
        f"# {title}",
        "",
        "This is a standard response prepared while the enhanced generators are unavailable.",
        "",
        "## Request",
        request.prompt.strip() or "(no prompt supplied)",
    ]
    details = _format_context(context)
    if details:
        lines.extend(["", "## Details", details])
    if terms:
        lines.extend(["", "## Key Points", *[f"- {term}" for term in terms]])
    lines.extend(
        [
            "",
            "A fuller version will be generated automatically once service quality recovers.",
        ]
    )
    return "\n".join(lines)


def _title_from_prompt(prompt: str, max_words: int = 8) -> str:
    words = prompt.strip().split()
    if not words:
        return "Untitled"
    title = " ".join(words[:max_words])
    return title + ("..." if len(words) > max_words else "")


class SubRequestBuilder:
    """Binds tier configuration to :func:`build_sub_request`."""

    def __init__(self, config: AppConfig) -> None:
        self._config = config
        self._logger = LOGGER

    def build(self, tier: StrategyTier, request: GenerationRequest) -> SubRequest:
        self._logger.debug(
            "Building %s sub-request for request %s", tier.value, request.request_id
        )
        return build_sub_request(tier, request, self._config.tiers.get(tier))
