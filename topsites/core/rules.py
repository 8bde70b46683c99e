"""Partner-specific business rules applied while building target URLs.

All rules are plain data loaded from the campaign file so new partners can be
supported without code changes.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import List, Mapping, Optional, Tuple

DEFAULT_REGIONS = {
    "ca": "ca",
    "co.uk": "gb",
    "com.au": "au",
    "com": "us",
    "de": "de",
    "fr": "fr",
}


@dataclass(frozen=True)
class PartnerOverride:
    """Force a query parameter when the X-Target-URL host matches a prefix."""
    host_prefix: str
    param: str
    value: str

    def matches(self, hostname: str) -> bool:
        return hostname.lower().startswith(self.host_prefix.lower())


@dataclass(frozen=True)
class CampaignTagRule:
    """Extract a campaign tag from the X-Target-URL query string."""
    param: str = "ctag"
    sources: Tuple[str, ...] = ("ref", "crlp")
    strip: Tuple[str, ...] = ("pd_sl_a",)

    def extract(self, query: Mapping[str, List[str]]) -> Optional[str]:
        """Return the first non-empty source value, each strip token removed once."""
        for source in self.sources:
            values = query.get(source)
            if values and values[0]:
                tag = values[0]
                for token in self.strip:
                    tag = tag.replace(token, "", 1)
                return tag
        return None


@dataclass(frozen=True)
class PathKeyRule:
    """Move a query parameter into the path for a specific endpoint."""
    url: str
    param: str = "locationKey"
    suffix: str = ".json"

    def applies_to(self, base_url: str) -> bool:
        return bool(self.url) and base_url == self.url


@dataclass(frozen=True)
class RoutingRules:
    regions: Mapping[str, str] = field(
        default_factory=lambda: MappingProxyType(dict(DEFAULT_REGIONS))
    )
    partner_overrides: Tuple[PartnerOverride, ...] = ()
    campaign_tag: Optional[CampaignTagRule] = field(default_factory=CampaignTagRule)
    path_keys: Tuple[PathKeyRule, ...] = ()

    @classmethod
    def from_config(cls, config: dict) -> "RoutingRules":
        """Build rules from a parsed campaign file.

        Missing sections fall back to the built-in defaults; an explicit
        ``campaign_tag: null`` disables tag extraction.
        """
        regions = config.get("regions")
        if regions is None:
            regions = DEFAULT_REGIONS

        if "campaign_tag" in config and config["campaign_tag"] is None:
            tag_rule = None
        else:
            tag_data = config.get("campaign_tag") or {}
            defaults = CampaignTagRule()
            tag_rule = CampaignTagRule(
                param=tag_data.get("param", defaults.param),
                sources=tuple(tag_data.get("sources", defaults.sources)),
                strip=tuple(tag_data.get("strip", defaults.strip)),
            )

        return cls(
            regions=MappingProxyType({
                str(suffix).lower(): str(region).lower()
                for suffix, region in regions.items()
            }),
            partner_overrides=tuple(
                PartnerOverride(
                    host_prefix=item["host_prefix"],
                    param=item["param"],
                    value=str(item["value"]),
                )
                for item in config.get("partner_overrides") or []
            ),
            campaign_tag=tag_rule,
            path_keys=tuple(
                PathKeyRule(
                    url=item.get("url") or "",
                    param=item.get("param", "locationKey"),
                    suffix=item.get("suffix", ".json"),
                )
                for item in config.get("path_keys") or []
            ),
        )

    def region_for_suffix(self, suffix: str) -> Optional[str]:
        return self.regions.get(suffix.lower())
