"""Target URL builder.

Resolves a campaign's query template against a live request: the inbound
query string is merged over the template, the optional ``X-Target-URL``
header drives region validation, partner overrides and campaign-tag
extraction, and ``%header:<name>%`` placeholders are substituted with header
values.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Tuple
from urllib.parse import parse_qs, quote, urlsplit

from topsites.core.campaign import CampaignDescriptor
from topsites.core.errors import ProxyError
from topsites.core.rules import RoutingRules
from topsites.core.suffix import PublicSuffixLookup, SuffixLookup
from topsites.core.template import (
    HeaderRef,
    LiteralValue,
    TemplateValue,
    parse_template_value,
)

logger = logging.getLogger(__name__)

TARGET_URL_HEADER = "x-target-url"
REGION_HEADER = "x-region"

# Characters left alone by JavaScript's encodeURIComponent
URI_COMPONENT_SAFE = "-_.!~*'()"

REGION_ALIASES = {"gb": "uk"}

ERR_REGION_MISMATCH = "Public suffix region mismatch."


class RegionMismatch(ProxyError):
    """Raised when X-Region disagrees with the X-Target-URL public suffix."""

    status_code = 412

    def __init__(self, message: str = ERR_REGION_MISMATCH, suffix: str = "", region: str = ""):
        self.suffix = suffix
        self.region = region
        super().__init__(message)


class MissingParameter(ProxyError):
    """Raised when a parameter required by a path-key rule is absent."""

    def __init__(self, param: str):
        self.param = param
        super().__init__(f"{param} parameter must be provided.")


def encode_uri_component(value: str) -> str:
    return quote(value, safe=URI_COMPONENT_SAFE)


@dataclass(frozen=True)
class ResolvedTarget:
    """A fully resolved target: no placeholders remain."""
    base_url: str
    query: Tuple[Tuple[str, str], ...] = ()

    @property
    def url(self) -> str:
        if not self.query:
            return self.base_url
        return self.base_url + "?" + "&".join(f"{key}={value}" for key, value in self.query)

    def __str__(self) -> str:
        return self.url


@dataclass
class ResolutionContext:
    """Per-request working state; built fresh for every resolve call."""
    headers: Dict[str, str]
    params: Dict[str, TemplateValue]
    base_url: str
    prefix: List[Tuple[str, str]] = field(default_factory=list)

    @classmethod
    def create(
        cls,
        descriptor: CampaignDescriptor,
        headers: Mapping[str, str],
        query_params: Iterable[Tuple[str, str]],
    ) -> "ResolutionContext":
        params: Dict[str, TemplateValue] = dict(descriptor.query_template)
        for name, value in query_params:
            params[name] = parse_template_value(value)
        return cls(
            headers={name.lower(): value for name, value in headers.items()},
            params=params,
            base_url=descriptor.base_url or "",
        )

    def header(self, name: str) -> Optional[str]:
        return self.headers.get(name.lower())


class TargetURLBuilder:
    """Builds the upstream URL for a campaign request."""

    def __init__(
        self,
        rules: Optional[RoutingRules] = None,
        suffix_lookup: Optional[SuffixLookup] = None,
    ):
        """
        Args:
            rules: Region table and partner rules (defaults to built-ins).
            suffix_lookup: Public-suffix lookup (defaults to tldextract).
        """
        self.rules = rules or RoutingRules()
        self._suffix_lookup = suffix_lookup or PublicSuffixLookup()

    def resolve(
        self,
        headers: Mapping[str, str],
        query_params: Iterable[Tuple[str, str]],
        descriptor: CampaignDescriptor,
    ) -> ResolvedTarget:
        """Resolve ``descriptor`` against the inbound request.

        Args:
            headers: Inbound request headers (any case).
            query_params: Inbound query string as (name, value) pairs.
            descriptor: Campaign to resolve.

        Returns:
            ResolvedTarget with the final base URL and ordered query.

        Raises:
            RegionMismatch: X-Region contradicts the X-Target-URL suffix.
            MissingParameter: A path-key rule's parameter wasn't supplied.
        """
        ctx = ResolutionContext.create(descriptor, headers, query_params)

        target_url = ctx.header(TARGET_URL_HEADER)
        if target_url:
            self._apply_target_url(ctx, target_url)

        self._apply_path_keys(ctx)

        query = [(name, self._resolve_value(ctx, value)) for name, value in ctx.params.items()]
        return ResolvedTarget(base_url=ctx.base_url, query=tuple(ctx.prefix + query))

    def _apply_target_url(self, ctx: ResolutionContext, raw_url: str) -> None:
        try:
            parts = urlsplit(raw_url)
            hostname = parts.hostname
        except ValueError:
            hostname = None
        if not hostname or not parts.scheme:
            logger.info("Invalid URL passed for X-Target-URL: %s", raw_url)
            return

        self._check_region(ctx, hostname)

        for rule in self.rules.partner_overrides:
            if rule.matches(hostname):
                ctx.params[rule.param] = LiteralValue(rule.value)

        tag_rule = self.rules.campaign_tag
        if tag_rule is not None:
            tag = tag_rule.extract(parse_qs(parts.query))
            if tag:
                ctx.prefix.append((tag_rule.param, encode_uri_component(tag)))

    def _check_region(self, ctx: ResolutionContext, hostname: str) -> None:
        region = ctx.header(REGION_HEADER)
        if not region:
            return
        suffix = self._suffix_lookup.suffix(hostname)
        expected = self.rules.region_for_suffix(suffix) if suffix else None
        if expected is not None and expected != region.lower():
            raise RegionMismatch(suffix=suffix, region=region.lower())

    def _apply_path_keys(self, ctx: ResolutionContext) -> None:
        for rule in self.rules.path_keys:
            if not rule.applies_to(ctx.base_url):
                continue
            value = ctx.params.pop(rule.param, None)
            key = self._resolve_value(ctx, value) if value is not None else ""
            if not key:
                raise MissingParameter(rule.param)
            ctx.base_url = f"{ctx.base_url}{key}{rule.suffix}"
            return

    def _resolve_value(self, ctx: ResolutionContext, value: TemplateValue) -> str:
        if isinstance(value, LiteralValue):
            return value.value
        if isinstance(value, HeaderRef):
            resolved = ctx.header(value.name) or ""
            if value.name == TARGET_URL_HEADER:
                return encode_uri_component(resolved)
            resolved = resolved.lower()
            return REGION_ALIASES.get(resolved, resolved)
        raise TypeError(f"Unsupported template value: {value!r}")
