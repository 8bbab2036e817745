"""Tests for tier-specific sub-request construction.

Updates:
    v0.1 - 2025-11-06 - Added sanity checks for prompt composition.
    v0.2 - 2025-11-08 - Covered per-tier payloads and the static template.
"""

from __future__ import annotations

from pathlib import Path

from config import settings
from core.prompt_engine import SubRequestBuilder, build_sub_request, render_static_template
from models.generation import GenerationRequest, StrategyTier


def _load_sample_config(tmp_path: Path) -> settings.AppConfig:
    source = Path(__file__).resolve().parent.parent / "config" / "config.json"
    config_path = tmp_path / "config.json"
    config_path.write_text(source.read_text(encoding="utf-8"), encoding="utf-8")
    return settings.load_app_config(config_path)


REQUEST = GenerationRequest(
    prompt="Write the onboarding email.",
    context={
        "product": "Relay",
        "audience": "new admins",
        "essentials": ["product"],
        "required_terms": ["SSO", "billing"],
    },
)


def test_full_tier_includes_all_sections(tmp_path: Path) -> None:
    config = _load_sample_config(tmp_path)
    sub_request = SubRequestBuilder(config).build(StrategyTier.FULL_ENHANCEMENT, REQUEST)

    assert "### Context" in sub_request.prompt
    assert "audience: new admins" in sub_request.prompt
    assert "### Must Mention" in sub_request.prompt
    assert "### Guidance" in sub_request.prompt
    assert sub_request.max_tokens == config.tiers[StrategyTier.FULL_ENHANCEMENT].max_tokens


def test_baseline_tier_keeps_only_essentials() -> None:
    sub_request = build_sub_request(StrategyTier.BASELINE, REQUEST)

    assert "product: Relay" in sub_request.prompt
    assert "audience" not in sub_request.prompt
    assert "### Guidance" not in sub_request.prompt


def test_minimal_tier_is_prompt_only() -> None:
    sub_request = build_sub_request(StrategyTier.MINIMAL, REQUEST)

    assert sub_request.prompt.startswith("Write the onboarding email.")
    assert "Relay" not in sub_request.prompt
    assert "SSO" in sub_request.prompt


def test_sub_request_is_pure() -> None:
    first = build_sub_request(StrategyTier.BASELINE, REQUEST)
    second = build_sub_request(StrategyTier.BASELINE, REQUEST)

    assert first == second
    assert dict(REQUEST.context)["essentials"] == ["product"]


def test_static_template_is_deterministic() -> None:
    first = render_static_template(REQUEST)
    second = render_static_template(REQUEST)

    assert first == second
    assert first.startswith("# Write the onboarding email.")
    assert "## Key Points" in first
    assert "- billing" in first


def test_static_template_prefers_context_title() -> None:
    request = GenerationRequest(prompt="", context={"title": "Status Update"})

    rendered = render_static_template(request)

    assert rendered.startswith("# Status Update")
    assert "(no prompt supplied)" in rendered
