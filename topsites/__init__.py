"""topsites-proxy - Campaign redirection relay."""

__version__ = "0.1.0"

from topsites.core.template import HeaderRef, LiteralValue, parse_template_value
from topsites.core.errors import ProxyError
from topsites.core.campaign import CampaignDescriptor, CampaignRegistry, InvalidCampaign
from topsites.core.rules import RoutingRules
from topsites.core.suffix import PublicSuffixLookup
from topsites.core.builder import (
    MissingParameter,
    RegionMismatch,
    ResolvedTarget,
    TargetURLBuilder,
)
from topsites.config.settings import Settings

__all__ = [
    "HeaderRef",
    "LiteralValue",
    "parse_template_value",
    "ProxyError",
    "CampaignDescriptor",
    "CampaignRegistry",
    "InvalidCampaign",
    "RoutingRules",
    "PublicSuffixLookup",
    "MissingParameter",
    "RegionMismatch",
    "ResolvedTarget",
    "TargetURLBuilder",
    "Settings",
]
