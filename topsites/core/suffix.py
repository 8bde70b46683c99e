"""Public-suffix lookup used for the region consistency check."""

from typing import Optional, Protocol

import tldextract


class SuffixLookup(Protocol):
    def suffix(self, hostname: str) -> str:
        ...


class PublicSuffixLookup:
    """Map hostnames to their public suffix (e.g. ``www.ebay.co.uk`` -> ``co.uk``).

    Uses the suffix list snapshot bundled with tldextract so lookups never hit
    the network.
    """

    def __init__(self, extractor: Optional[tldextract.TLDExtract] = None):
        self._extract = extractor or tldextract.TLDExtract(suffix_list_urls=())

    def suffix(self, hostname: str) -> str:
        if not hostname:
            return ""
        return self._extract(hostname).suffix.lower()
