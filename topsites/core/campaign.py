"""Campaign registry: the immutable set of campaigns served under /cid."""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Iterator, List, Mapping, Optional

from topsites.core.errors import ProxyError
from topsites.core.template import TemplateValue, parse_template_value
from topsites.utils.helpers import load_config_file

logger = logging.getLogger(__name__)

DEFAULT_METHOD = "GET"


class InvalidCampaign(ProxyError):
    """Raised when a campaign id is unknown, unconfigured or used wrongly."""
    pass


@dataclass(frozen=True)
class CampaignDescriptor:
    """A named advertising destination and its query template."""
    id: str
    base_url: Optional[str]
    query_template: Mapping[str, TemplateValue] = field(
        default_factory=lambda: MappingProxyType({})
    )
    allowed_method: str = DEFAULT_METHOD

    @classmethod
    def from_config(cls, campaign_id: str, data: Optional[dict]) -> "CampaignDescriptor":
        """Build a descriptor from one entry of the ``campaigns`` section.

        An empty or missing ``url`` yields a descriptor with no base URL; the
        dispatcher rejects requests to it.
        """
        data = data or {}
        query = data.get("query") or {}
        template = {
            str(name): parse_template_value("" if value is None else str(value))
            for name, value in query.items()
        }
        return cls(
            id=campaign_id.strip().lower(),
            base_url=data.get("url") or None,
            query_template=MappingProxyType(template),
            allowed_method=str(data.get("method") or DEFAULT_METHOD).upper(),
        )


class CampaignRegistry:
    """Read-only lookup of campaign descriptors by case-insensitive id."""

    def __init__(self, campaigns: Optional[List[CampaignDescriptor]] = None):
        entries: Dict[str, CampaignDescriptor] = {}
        for campaign in campaigns or []:
            entries[campaign.id.lower()] = campaign
        self._campaigns = MappingProxyType(entries)

    @classmethod
    def from_config(cls, config: dict) -> "CampaignRegistry":
        """Create a registry from a parsed campaign file."""
        section = config.get("campaigns") or {}
        return cls([
            CampaignDescriptor.from_config(campaign_id, data)
            for campaign_id, data in section.items()
        ])

    @classmethod
    def from_file(
        cls,
        file_path: Optional[str] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "CampaignRegistry":
        """Load campaigns from a YAML file (default: bundled campaigns.yaml).

        Raises:
            FileNotFoundError: If the campaign file doesn't exist.
        """
        config = load_config_file(file_path or default_campaigns_path(), environ)
        registry = cls.from_config(config)
        logger.debug("Loaded %d campaigns", len(registry))
        return registry

    def get(self, campaign_id: str) -> Optional[CampaignDescriptor]:
        return self._campaigns.get(campaign_id.strip().lower())

    def lookup(self, campaign_id: Optional[str], method: str = DEFAULT_METHOD) -> CampaignDescriptor:
        """Return the campaign a request may be forwarded to.

        Args:
            campaign_id: Raw id from the request path.
            method: Inbound HTTP method.

        Raises:
            InvalidCampaign: If the id is blank or unknown, the campaign has no
                base URL, or the method isn't allowed.
        """
        cid = (campaign_id or "").strip()
        if not cid:
            raise InvalidCampaign("no campaign identifier found")

        cid = cid.lower()
        campaign = self._campaigns.get(cid)
        if campaign is None:
            raise InvalidCampaign(f"invalid campaign identifier: {cid}")
        if not campaign.base_url:
            raise InvalidCampaign("invalid campaign, please check environment variables.")
        if campaign.allowed_method != method.upper():
            raise InvalidCampaign(f"invalid request method: {method}")
        return campaign

    def list_campaigns(self) -> List[str]:
        return sorted(self._campaigns)

    def __contains__(self, campaign_id: str) -> bool:
        return campaign_id.strip().lower() in self._campaigns

    def __iter__(self) -> Iterator[CampaignDescriptor]:
        return iter(self._campaigns.values())

    def __len__(self) -> int:
        return len(self._campaigns)


def default_campaigns_path() -> str:
    package_dir = Path(__file__).parent.parent
    return str(package_dir / "config" / "campaigns.yaml")
