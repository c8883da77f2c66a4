import json
from unittest.mock import Mock

import pytest

from sitekb.business_intel import (
    PASSES,
    AudienceSection,
    BrandVoiceSection,
    BusinessIntelligenceSynthesizer,
    BusinessSection,
    ServicesSection,
    parse_section,
    scrub_placeholders,
)
from sitekb.errors import EmbeddingError, GenerationError, ProfileParseError
from sitekb.schemas import QueryResult

CONTEXT = [QueryResult(id="s-1", score=0.8, metadata={"title": "Home", "content": "Acme fixes pipes."})]

GOOD = {
    "brand_voice": {"brand_voice": {"tone": "friendly", "style": "plain"}},
    "target_audience": {"target_audience": {"primary_audience": "homeowners"}},
    "business_context": {
        "business_context": {"company_name": "Acme Plumbing", "industry": "plumbing"},
        "contact_info": {"email": "hi@acme.test"},
    },
    "services": {"services": [{"name": "Pipe repair", "description": "Leaks fixed"}]},
}


def _section_of(user_prompt):
    for p in PASSES:
        if p.shape in user_prompt:
            return p.name
    raise AssertionError("unknown pass")


def _synth(replies, context=CONTEXT):
    """replies: pass name -> str payload or exception."""
    rag = Mock()
    rag.retrieve.return_value = (context, 1, 1)
    generator = Mock()

    def complete(system, user, **kwargs):
        reply = replies[_section_of(user)]
        if isinstance(reply, Exception):
            raise reply
        return reply

    generator.complete.side_effect = complete
    return BusinessIntelligenceSynthesizer(rag, generator), rag, generator


def test_all_passes_succeed():
    synth, rag, generator = _synth({k: json.dumps(v) for k, v in GOOD.items()})
    profile = synth.synthesize("s", "https://acme.test/")
    assert profile.brand_voice.tone == "friendly"
    assert profile.target_audience.primary_audience == "homeowners"
    assert profile.business_context.company_name == "Acme Plumbing"
    assert profile.contact_info.email == "hi@acme.test"
    assert profile.contact_info.website == "https://acme.test/"
    assert [s.name for s in profile.services] == ["Pipe repair"]
    assert profile.generated_at is not None
    assert rag.retrieve.call_count == 4
    for call in generator.complete.call_args_list:
        assert call.kwargs["json_mode"] is True
        assert call.kwargs["temperature"] == 0.2


def test_placeholder_company_name_falls_back_without_blocking_others():
    replies = {k: json.dumps(v) for k, v in GOOD.items()}
    replies["business_context"] = json.dumps(
        {"business_context": {"company_name": "Extracted Name", "industry": "plumbing"}}
    )
    synth, _, _ = _synth(replies)
    profile = synth.synthesize("s", "https://acme.test/")
    assert profile.business_context.company_name == "acme.test"
    assert profile.business_context.company_name.lower() != "extracted name"
    assert profile.brand_voice.tone == "friendly"
    assert profile.services[0].name == "Pipe repair"


@pytest.mark.parametrize(
    "failure",
    ["not json at all", "[1, 2]", json.dumps({"brand_voice": {"style": "x"}}), GenerationError("down")],
)
def test_one_failed_pass_uses_default(failure):
    replies = {k: json.dumps(v) for k, v in GOOD.items()}
    replies["brand_voice"] = failure
    synth, _, _ = _synth(replies)
    profile = synth.synthesize("s")
    assert profile.brand_voice.tone == "professional"
    assert profile.target_audience.primary_audience == "homeowners"
    assert profile.business_context.company_name == "Acme Plumbing"


def test_empty_retrieval_uses_defaults_without_generation():
    synth, _, generator = _synth({}, context=[])
    profile = synth.synthesize("s", "https://acme.test")
    assert generator.complete.call_count == 0
    assert profile.brand_voice.tone == "professional"
    assert profile.target_audience.primary_audience == "general audience"
    assert profile.business_context.company_name == "acme.test"
    assert profile.services == []


def test_retrieval_embedding_error_is_recovered():
    synth, rag, _ = _synth({k: json.dumps(v) for k, v in GOOD.items()})
    rag.retrieve.side_effect = EmbeddingError("no embeddings")
    profile = synth.synthesize("s")
    assert profile.business_context.company_name == "Unnamed business"


def test_services_require_at_least_one_real_entry():
    with pytest.raises(ProfileParseError):
        parse_section("services", json.dumps({"services": []}), ServicesSection)
    with pytest.raises(ProfileParseError):
        parse_section("services", json.dumps({"services": ["[service name]"]}), ServicesSection)
    with pytest.raises(ProfileParseError):
        parse_section("services", json.dumps({"services": [{"name": "TBD"}]}), ServicesSection)


def test_parse_section_reports_section_name():
    with pytest.raises(ProfileParseError) as exc:
        parse_section("target_audience", "{}", AudienceSection)
    assert exc.value.section == "target_audience"


def test_scrub_placeholders_recurses():
    data = {
        "business_context": {"company_name": "Company Name", "industry": "N/A", "location": "Austin"},
        "contact_info": {"email": "<email>", "phone": "555-0100", "website": "example.com"},
        "tags": ["real", "unknown", "[placeholder]", "  "],
        "count": 3,
    }
    assert scrub_placeholders(data) == {
        "business_context": {"location": "Austin"},
        "contact_info": {"phone": "555-0100"},
        "tags": ["real"],
        "count": 3,
    }


def test_contact_placeholders_are_dropped_but_section_accepted():
    section = parse_section(
        "business_context",
        json.dumps({
            "business_context": {"company_name": "Acme"},
            "contact_info": {"email": "not specified", "phone": "555-0100"},
        }),
        BusinessSection,
    )
    assert section.contact_info.email is None
    assert section.contact_info.phone == "555-0100"


def test_null_optional_fields_fall_back_to_defaults():
    section = parse_section(
        "brand_voice",
        json.dumps({"brand_voice": {"tone": "friendly", "style": None, "personality": [None, "warm"]}}),
        BrandVoiceSection,
    )
    assert section.brand_voice.tone == "friendly"
    assert section.brand_voice.style == ""
    assert section.brand_voice.personality == ["warm"]

    business = parse_section(
        "business_context",
        json.dumps({
            "business_context": {"company_name": "Acme", "industry": None, "location": None},
            "contact_info": {"email": None},
        }),
        BusinessSection,
    )
    assert business.business_context.company_name == "Acme"
    assert business.business_context.industry == ""
    assert business.contact_info.email is None


def test_null_required_field_is_rejected():
    with pytest.raises(ProfileParseError):
        parse_section("brand_voice", json.dumps({"brand_voice": {"tone": None}}), BrandVoiceSection)


def test_unknown_top_level_keys_are_rejected():
    with pytest.raises(ProfileParseError):
        parse_section(
            "target_audience",
            json.dumps({"target_audience": {"primary_audience": "homeowners"}, "notes": "extra"}),
            AudienceSection,
        )
