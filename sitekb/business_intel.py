"""Business intelligence profile synthesis.

Builds a BusinessIntelligenceProfile from four independent retrieval +
generation passes (brand voice, target audience, business context, services).
Each pass:
1) retrieves site context for a fixed query,
2) asks the generation API for a JSON object with an explicit shape,
3) removes template-like placeholder values (scrub_placeholders),
4) validates the result with a strict pydantic model.

Any failure inside a pass (empty retrieval, unparseable JSON, schema violation,
completion/embedding error) becomes a ProfileParseError for that pass, is logged,
and the pass falls back to its documented default. One pass never blocks another.
"""
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Type
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from sitekb.errors import EmbeddingError, GenerationError, ProfileParseError
from sitekb.generation import GenerationClient
from sitekb.obs import span
from sitekb.retrieval import RetrievalGenerator, format_context
from sitekb.schemas import (
    BrandVoice,
    BusinessContext,
    BusinessIntelligenceProfile,
    ContactInfo,
    ContentGuidelines,
    Service,
    TargetAudience,
)
from sitekb.utils import utcnow

logger = logging.getLogger(__name__)


# Values the model emits when it copies the template instead of extracting facts
PLACEHOLDER_VALUES = {
    "extracted name",
    "company name",
    "business name",
    "your company",
    "your business",
    "unknown",
    "n/a",
    "na",
    "none",
    "null",
    "not specified",
    "not available",
    "not provided",
    "example",
    "example.com",
    "lorem ipsum",
    "tbd",
    "string",
    "...",
}
_TEMPLATE = re.compile(r"^\s*(\[[^\]]*\]|<[^>]*>|\{\{[^}]*\}\})\s*$")


def is_placeholder(value: str) -> bool:
    v = value.strip().lower()
    return not v or v in PLACEHOLDER_VALUES or bool(_TEMPLATE.match(value)) or v.startswith("lorem ipsum")


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and is_placeholder(value))


def scrub_placeholders(value: Any) -> Any:
    """Recursively drop placeholder strings and nulls.

    Dict keys whose value is a placeholder or null are removed, so an optional
    field falls back to its default and a required one fails validation. List
    items are dropped the same way.
    """
    if isinstance(value, dict):
        return {k: scrub_placeholders(v) for k, v in value.items() if not _is_empty(v)}
    if isinstance(value, list):
        return [scrub_placeholders(v) for v in value if not _is_empty(v)]
    return value


# ---------------------------------------------------------------------------
# Per-pass result models
# ---------------------------------------------------------------------------


class _Section(BaseModel):
    """Top-level keys must match the requested shape exactly."""

    model_config = ConfigDict(extra="forbid")


class BrandVoiceSection(_Section):
    brand_voice: BrandVoice
    content_guidelines: ContentGuidelines = Field(default_factory=ContentGuidelines)


class AudienceSection(_Section):
    target_audience: TargetAudience


class BusinessSection(_Section):
    business_context: BusinessContext
    contact_info: ContactInfo = Field(default_factory=ContactInfo)


class ServicesSection(_Section):
    services: List[Service] = Field(..., min_length=1)


@dataclass(frozen=True)
class SynthesisPass:
    name: str
    query: str
    shape: str
    model: Type[BaseModel]


PASSES = (
    SynthesisPass(
        name="brand_voice",
        query="brand voice tone style personality messaging how the company talks to customers",
        shape=(
            '{"brand_voice": {"tone": str, "style": str, "personality": [str], "key_phrases": [str]}, '
            '"content_guidelines": {"dos": [str], "donts": [str], "preferred_terms": [str]}}'
        ),
        model=BrandVoiceSection,
    ),
    SynthesisPass(
        name="target_audience",
        query="target audience customers who we serve clients pain points goals",
        shape=(
            '{"target_audience": {"primary_audience": str, "demographics": [str], '
            '"pain_points": [str], "goals": [str]}}'
        ),
        model=AudienceSection,
    ),
    SynthesisPass(
        name="business_context",
        query="about us company name mission value proposition industry location contact email phone",
        shape=(
            '{"business_context": {"company_name": str, "industry": str, "value_proposition": str, '
            '"differentiators": [str], "location": str}, '
            '"contact_info": {"email": str, "phone": str, "address": str, "website": str}}'
        ),
        model=BusinessSection,
    ),
    SynthesisPass(
        name="services",
        query="services products offerings features solutions what we do",
        shape='{"services": [{"name": str, "description": str}]}',
        model=ServicesSection,
    ),
)

SYSTEM_PROMPT = (
    "You extract structured business information from website content. "
    "Respond with a single JSON object matching the requested shape. "
    "Use only facts present in the provided content. Omit any field you cannot "
    "determine instead of filling it with a placeholder."
)


def default_sections(site_url: Optional[str] = None) -> Dict[str, Dict[str, Any]]:
    """Fallback value for every pass, keyed by pass name."""
    host = urlparse(site_url).hostname if site_url else None
    return {
        "brand_voice": {
            "brand_voice": BrandVoice(tone="professional", style="informative"),
            "content_guidelines": ContentGuidelines(),
        },
        "target_audience": {
            "target_audience": TargetAudience(primary_audience="general audience"),
        },
        "business_context": {
            "business_context": BusinessContext(company_name=host or "Unnamed business"),
            "contact_info": ContactInfo(website=site_url),
        },
        "services": {"services": []},
    }


def parse_section(section: str, raw: str, model: Type[BaseModel]) -> BaseModel:
    """Parse and validate one pass's JSON output.

    Raises:
        ProfileParseError: If the text is not a JSON object, or fails the
            schema after placeholder removal.
    """
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ProfileParseError(section, f"invalid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ProfileParseError(section, f"expected a JSON object, got {type(data).__name__}")
    try:
        return model.model_validate(scrub_placeholders(data))
    except ValidationError as exc:
        raise ProfileParseError(section, f"{exc.error_count()} validation errors") from exc


class BusinessIntelligenceSynthesizer:
    """Runs the four synthesis passes for a site.

    Args:
        rag: Retrieval service used to gather context per pass.
        generator: Completion client used for the JSON generation calls.
        max_results: topK per pass.
        threshold: Similarity threshold per pass.
        temperature: Sampling temperature for the JSON calls.
        max_tokens: Output cap for the JSON calls.
    """

    def __init__(
        self,
        rag: RetrievalGenerator,
        generator: GenerationClient,
        max_results: int = 8,
        threshold: float = 0.5,
        temperature: float = 0.2,
        max_tokens: int = 1000,
    ):
        self.rag = rag
        self.generator = generator
        self.max_results = max_results
        self.threshold = threshold
        self.temperature = temperature
        self.max_tokens = max_tokens

    def _run_pass(self, site_id: str, p: SynthesisPass) -> BaseModel:
        try:
            context, _, _ = self.rag.retrieve(site_id, p.query, self.max_results, self.threshold)
        except EmbeddingError as exc:
            raise ProfileParseError(p.name, f"retrieval failed: {exc}") from exc
        if not context:
            raise ProfileParseError(p.name, "no context above threshold")

        user_prompt = (
            f"Website content:\n{format_context(context)}\n\n"
            f"Return a JSON object with exactly this shape:\n{p.shape}"
        )
        try:
            raw = self.generator.complete(
                SYSTEM_PROMPT,
                user_prompt,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                json_mode=True,
            )
        except GenerationError as exc:
            raise ProfileParseError(p.name, str(exc)) from exc
        return parse_section(p.name, raw, p.model)

    def synthesize(self, site_id: str, site_url: Optional[str] = None) -> BusinessIntelligenceProfile:
        """Build the full profile; never fails because of a single pass."""
        defaults = default_sections(site_url)
        fields: Dict[str, Any] = {}
        for p in PASSES:
            with span("bi.pass", {"site_id": site_id, "section": p.name}):
                try:
                    result = self._run_pass(site_id, p)
                    fields.update({k: getattr(result, k) for k in type(result).model_fields})
                    logger.info("Synthesized %s profile for site %s", p.name, site_id)
                except ProfileParseError as exc:
                    logger.warning("%s; using default for site %s", exc, site_id)
                    fields.update(defaults[p.name])

        contact: ContactInfo = fields["contact_info"]
        if contact.website is None and site_url:
            fields["contact_info"] = contact.model_copy(update={"website": site_url})

        return BusinessIntelligenceProfile(generated_at=utcnow(), **fields)
